import logging
import os
from typing import Optional, Tuple

from marketplace.models import Booking, BookingLifecycleEvent, LifecycleEventKind, NotificationRecord, Profile, Role
from marketplace.services.marketplace_store import MarketplaceStore, marketplace_store
from marketplace.services.notification_store import NotificationStore, notification_store

logger = logging.getLogger(__name__)

CURRENCY_SYMBOL = os.getenv("CURRENCY_SYMBOL", "R")
MARKETPLACE_NAME = os.getenv("MARKETPLACE_NAME", "Skilled Nearby")

PROVIDER_NEXT_STEPS = [
    "Complete your profile with skills and experience",
    "Set your availability and rates",
    "Create your first service listing",
    "Wait for approval from our team",
]
CLIENT_NEXT_STEPS = [
    "Browse available services in your area",
    "Read reviews from other customers",
    "Book services that meet your needs",
    "Rate and review service providers",
]


def recipient_for(event: BookingLifecycleEvent, provider_profile_id: str) -> str:
    """New requests go to the provider; a cancellation goes to whoever did not cancel."""
    if event.kind == LifecycleEventKind.booking_request:
        return provider_profile_id
    if event.kind == LifecycleEventKind.booking_cancelled and event.actor_id == event.client_id:
        return provider_profile_id
    return event.client_id


def _details(booking: Booking, service_name: str) -> str:
    lines = [
        f"Service: {service_name}",
        f"Date: {booking.scheduled_date}",
        f"Time: {booking.scheduled_time}",
        f"Duration: {booking.duration_minutes} minutes",
    ]
    if booking.total_price is not None:
        lines.append(f"Price: {CURRENCY_SYMBOL}{booking.total_price:g}")
    return "\n".join(lines)


def render_message(
    event: BookingLifecycleEvent,
    booking: Booking,
    service_name: str,
    client: Profile,
    provider: Profile,
) -> Tuple[str, str]:
    if event.kind == LifecycleEventKind.booking_request:
        body = f"You have received a new booking request from {client.display_name}.\n\n{_details(booking, service_name)}"
        if booking.client_notes:
            body += f"\n\nClient notes: {booking.client_notes}"
        return f"New Booking Request - {service_name}", body

    if event.kind == LifecycleEventKind.booking_confirmed:
        body = f"Your booking with {provider.display_name} has been confirmed.\n\n{_details(booking, service_name)}"
        if booking.provider_notes:
            body += f"\n\nProvider notes: {booking.provider_notes}"
        return f"Booking Confirmed - {service_name}", body

    if event.kind == LifecycleEventKind.booking_cancelled:
        canceller = client if event.actor_id == event.client_id else provider
        body = f"Your booking for {service_name} on {booking.scheduled_date} was cancelled by {canceller.display_name}."
        if booking.provider_notes and event.actor_id != event.client_id:
            body += f"\n\nCancellation reason: {booking.provider_notes}"
        return f"Booking Cancelled - {service_name}", body

    body = (
        f"Your service {service_name} with {provider.display_name} has been marked as completed. "
        "Please consider leaving a review to help other customers."
    )
    return f"Service Completed - {service_name}", body


def render_welcome(profile: Profile) -> Tuple[str, str]:
    steps = PROVIDER_NEXT_STEPS if profile.role == Role.provider else CLIENT_NEXT_STEPS
    heading = "Next steps for service providers:" if profile.role == Role.provider else "Getting started:"
    body = (
        f"Hi {profile.first_name},\n\nThank you for joining {MARKETPLACE_NAME}! "
        "We're excited to have you as part of our community.\n\n"
        + heading
        + "\n"
        + "\n".join(f"- {step}" for step in steps)
    )
    return f"Welcome to {MARKETPLACE_NAME}, {profile.first_name}!", body


class BookingNotifier:
    """Best-effort delivery of booking lifecycle events.

    ``notify`` never raises; a failure is logged and the booking it describes
    stays exactly as it was stored.
    """

    def __init__(self, store: MarketplaceStore, notifications: NotificationStore):
        self.store = store
        self.notifications = notifications

    def notify(self, event: BookingLifecycleEvent) -> Optional[NotificationRecord]:
        try:
            return self._deliver(event)
        except Exception:
            logger.exception("Failed to dispatch %s for booking %s", event.kind.value, event.booking_id)
            return None

    def _deliver(self, event: BookingLifecycleEvent) -> Optional[NotificationRecord]:
        booking = self.store.get_booking(event.booking_id)
        provider = self.store.get_provider(event.provider_id)
        client = self.store.get_profile(event.client_id)
        if not booking or not provider or not client:
            logger.warning("Skipping %s for booking %s: missing records", event.kind.value, event.booking_id)
            return None
        provider_profile = self.store.get_profile(provider.profile_id)
        if not provider_profile:
            logger.warning("Skipping %s for booking %s: provider profile missing", event.kind.value, event.booking_id)
            return None
        listing = self.store.get_listing(booking.listing_id)
        service_name = listing.title if listing else provider.business_name

        title, body = render_message(event, booking, service_name, client, provider_profile)
        record = self.notifications.create(
            profile_id=recipient_for(event, provider.profile_id),
            title=title,
            body=body,
            category="booking",
            deep_link=f"booking:{booking.id}",
        )
        logger.info("Dispatched %s for booking %s to %s", event.kind.value, booking.id, record.profile_id)
        return record

    def welcome(self, profile: Profile) -> Optional[NotificationRecord]:
        try:
            title, body = render_welcome(profile)
            record = self.notifications.create(profile_id=profile.id, title=title, body=body, category="system")
        except Exception:
            logger.exception("Failed to send welcome notification to %s", profile.id)
            return None
        logger.info("Sent welcome notification to %s (%s)", profile.id, profile.role.value)
        return record


booking_notifier = BookingNotifier(store=marketplace_store, notifications=notification_store)
