import logging
from datetime import datetime, timezone
from typing import Callable, List, Optional, Tuple
from uuid import uuid4

from marketplace.models import (
    AvailabilityVerdict,
    Booking,
    BookingStatus,
    ProviderStatus,
    Review,
    Role,
    ServiceListing,
    ServiceProvider,
)
from marketplace.services import availability, lifecycle
from marketplace.services.errors import (
    BookingRejected,
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from marketplace.services.lifecycle import TransitionPlan
from marketplace.services.marketplace_store import MarketplaceStore, marketplace_store

logger = logging.getLogger(__name__)


class BookingService:
    """Runs every booking mutation as read current state, decide, then conditionally write.

    Lifecycle events are returned to the caller rather than dispatched here, so a
    failed notification can never undo a stored transition.
    """

    def __init__(self, store: MarketplaceStore, clock: Optional[Callable[[], datetime]] = None):
        self.store = store
        self._clock = clock or datetime.now

    def _bookable_listing(self, listing_id: str) -> Tuple[ServiceListing, ServiceProvider]:
        listing = self.store.get_listing(listing_id)
        if not listing or not listing.is_active:
            raise NotFoundError("Listing not found or inactive")
        provider = self.store.get_provider(listing.provider_id)
        if not provider or provider.verification_status != ProviderStatus.approved:
            raise NotFoundError("Provider not found or not approved")
        return listing, provider

    def resolve_role(self, booking: Booking, actor_id: str) -> Role:
        if booking.client_id == actor_id:
            return Role.client
        provider = self.store.get_provider(booking.provider_id)
        if provider and provider.profile_id == actor_id:
            return Role.provider
        raise PermissionDeniedError("Only the booking's client or provider can access it")

    def check_availability(
        self,
        *,
        listing_id: str,
        scheduled_date: str,
        scheduled_time: str,
    ) -> AvailabilityVerdict:
        listing, provider = self._bookable_listing(listing_id)
        slot_date = availability.parse_date(scheduled_date, field="scheduled_date")
        slot_time = availability.parse_time(scheduled_time, field="scheduled_time")
        return availability.check_slot(
            self.store.list_availability_rules(provider.id),
            self.store.list_active_bookings(provider.id, slot_date),
            slot_date,
            slot_time,
            listing.duration_minutes or lifecycle.DEFAULT_DURATION_MINUTES,
            self._clock(),
        )

    def open_slots(self, *, listing_id: str, scheduled_date: str) -> List[str]:
        listing, provider = self._bookable_listing(listing_id)
        slot_date = availability.parse_date(scheduled_date, field="scheduled_date")
        return availability.open_slots(
            self.store.list_availability_rules(provider.id),
            self.store.list_active_bookings(provider.id, slot_date),
            slot_date,
            listing.duration_minutes or lifecycle.DEFAULT_DURATION_MINUTES,
            self._clock(),
        )

    def create_booking(
        self,
        *,
        actor_id: str,
        listing_id: str,
        scheduled_date: str,
        scheduled_time: str,
        client_notes: str = "",
    ) -> TransitionPlan:
        client = self.store.get_profile(actor_id)
        if not client:
            raise NotFoundError("Profile not found")
        if client.role != Role.client:
            raise PermissionDeniedError("Only clients can request bookings")

        listing, provider = self._bookable_listing(listing_id)
        if provider.profile_id == actor_id:
            raise PermissionDeniedError("Providers cannot book their own listings")

        slot_date = availability.parse_date(scheduled_date, field="scheduled_date")
        slot_time = availability.parse_time(scheduled_time, field="scheduled_time")
        plan = lifecycle.new_booking(
            listing=listing,
            client_id=actor_id,
            scheduled_date=slot_date.isoformat(),
            scheduled_time=slot_time.strftime("%H:%M"),
            client_notes=client_notes,
        )
        try:
            availability.assert_slot_available(
                self.store.list_availability_rules(provider.id),
                self.store.list_active_bookings(provider.id, slot_date),
                slot_date,
                slot_time,
                plan.booking.duration_minutes,
                self._clock(),
            )
            self.store.insert_booking_if_free(plan.booking)
        except BookingRejected as exc:
            logger.info(
                "Booking rejected for listing %s on %s %s: %s",
                listing_id,
                scheduled_date,
                scheduled_time,
                exc.reason.value,
            )
            raise
        logger.info("Booking %s requested by %s", plan.booking.id, actor_id)
        return plan

    def get_booking(self, *, booking_id: str, actor_id: str) -> Booking:
        booking = self.store.get_booking(booking_id)
        if not booking:
            raise NotFoundError("Booking not found")
        self.resolve_role(booking, actor_id)
        return booking

    def transition(
        self,
        *,
        booking_id: str,
        actor_id: str,
        target: BookingStatus,
        provider_notes: Optional[str] = None,
    ) -> TransitionPlan:
        booking = self.store.get_booking(booking_id)
        if not booking:
            raise NotFoundError("Booking not found")
        role = self.resolve_role(booking, actor_id)
        plan = lifecycle.plan_transition(
            booking,
            actor_id=actor_id,
            actor_role=role,
            target=target,
            provider_notes=provider_notes,
        )
        if not plan.changed:
            logger.info("Booking %s already %s; nothing to do", booking_id, target.value)
            return plan

        try:
            stored = self.store.conditional_update_booking(
                booking_id=booking_id,
                expected_status=booking.status,
                expected_version=booking.version,
                updated=plan.booking,
                actor_id=actor_id,
                note=provider_notes or "",
                require_free_slot=target == BookingStatus.confirmed,
            )
        except ConflictError:
            # A concurrent writer may already have applied the very same move.
            current = self.store.get_booking(booking_id)
            if current and current.status == target:
                logger.info("Booking %s reached %s concurrently; treating as no-op", booking_id, target.value)
                return TransitionPlan(booking=current, changed=False)
            logger.warning("Conditional write lost for booking %s (%s -> %s)", booking_id, booking.status.value, target.value)
            raise
        logger.info("Booking %s moved %s -> %s by %s", booking_id, booking.status.value, target.value, role.value)
        return TransitionPlan(booking=stored, changed=True, events=plan.events)

    def create_review(
        self,
        *,
        booking_id: str,
        actor_id: str,
        rating: int,
        comment: Optional[str] = None,
    ) -> Review:
        booking = self.store.get_booking(booking_id)
        if not booking:
            raise NotFoundError("Booking not found")
        if booking.client_id != actor_id:
            raise PermissionDeniedError("Only the booking's client can review it")
        if booking.status != BookingStatus.completed:
            raise ValidationError("Only completed bookings can be reviewed")
        if rating < 1 or rating > 5:
            raise ValidationError("rating must be between 1 and 5")
        review = Review(
            id=f"rev_{uuid4().hex[:10]}",
            booking_id=booking.id,
            provider_id=booking.provider_id,
            reviewer_id=actor_id,
            rating=rating,
            comment=comment.strip() if comment and comment.strip() else None,
            created_at=datetime.now(timezone.utc).isoformat(),
        )
        return self.store.insert_review(review)


booking_service = BookingService(store=marketplace_store)
