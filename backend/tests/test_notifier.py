import logging
import os
import sys
from datetime import datetime

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from marketplace.models import AvailabilityRule, BookingStatus, LifecycleEventKind, PriceType, ProviderStatus, Role
from marketplace.services.booking_notifier import BookingNotifier, recipient_for, render_welcome
from marketplace.services.booking_service import BookingService
from marketplace.services.marketplace_store import MarketplaceStore
from marketplace.services.notification_store import NotificationStore
from marketplace.services.push_sender import PushSender


class RecordingPushSender(PushSender):
    def __init__(self):
        super().__init__(credentials_path=None)
        self.sent = []

    def send_to_profile(self, profile_id, title, body, data):
        self.sent.append((profile_id, title))
        return 1


class ExplodingNotifications(NotificationStore):
    def create(self, *args, **kwargs):
        raise RuntimeError("push backend down")


@pytest.fixture
def store(tmp_path):
    return MarketplaceStore(db_path=str(tmp_path / "marketplace.sqlite3"))


@pytest.fixture
def world(store):
    client = store.create_profile(role=Role.client, first_name="Kagiso", last_name="Molefe")
    owner = store.create_profile(role=Role.provider, first_name="Anele", last_name="Zulu")
    provider = store.create_provider(profile_id=owner.id, business_name="Anele Gardens")
    store.set_provider_status(provider.id, ProviderStatus.approved)
    listing = store.create_listing(
        actor_id=owner.id,
        category_id=store.list_categories()[0].id,
        title="Lawn mowing",
        description="Front and back lawn",
        price=250,
        price_type=PriceType.fixed,
        duration_minutes=120,
    )
    store.replace_availability(
        provider_id=provider.id,
        actor_id=owner.id,
        rules=[AvailabilityRule(day_of_week=1, start_time="08:00", end_time="16:00")],
    )
    service = BookingService(store=store, clock=lambda: datetime(2030, 6, 1, 8, 0))
    return {"client": client, "owner": owner, "provider": provider, "listing": listing, "service": service}


def _request(world):
    return world["service"].create_booking(
        actor_id=world["client"].id,
        listing_id=world["listing"].id,
        scheduled_date="2030-06-03",
        scheduled_time="08:00",
        client_notes="Dogs are friendly",
    )


def test_request_goes_to_provider(store, world):
    pusher = RecordingPushSender()
    notifier = BookingNotifier(store=store, notifications=NotificationStore(pusher=pusher))
    event = _request(world).events[0]

    record = notifier.notify(event)
    assert record.profile_id == world["owner"].id
    assert record.title == "New Booking Request - Lawn mowing"
    assert "Kagiso Molefe" in record.body
    assert "Dogs are friendly" in record.body
    assert record.category == "booking"
    assert record.deep_link == f"booking:{event.booking_id}"
    assert pusher.sent == [(world["owner"].id, record.title)]


def test_confirm_and_complete_go_to_client(store, world):
    notifications = NotificationStore(pusher=RecordingPushSender())
    notifier = BookingNotifier(store=store, notifications=notifications)
    booking = _request(world).booking
    owner_id = world["owner"].id

    confirmed = world["service"].transition(
        booking_id=booking.id,
        actor_id=owner_id,
        target=BookingStatus.confirmed,
        provider_notes="Will bring my own mower",
    )
    record = notifier.notify(confirmed.events[0])
    assert record.profile_id == world["client"].id
    assert record.title == "Booking Confirmed - Lawn mowing"
    assert "Will bring my own mower" in record.body

    completed = world["service"].transition(booking_id=booking.id, actor_id=owner_id, target=BookingStatus.completed)
    record = notifier.notify(completed.events[0])
    assert record.profile_id == world["client"].id
    assert record.title == "Service Completed - Lawn mowing"


def test_cancellation_goes_to_the_other_party(store, world):
    notifier = BookingNotifier(store=store, notifications=NotificationStore(pusher=RecordingPushSender()))
    by_client = world["service"].transition(
        booking_id=_request(world).booking.id,
        actor_id=world["client"].id,
        target=BookingStatus.cancelled,
    )
    record = notifier.notify(by_client.events[0])
    assert record.profile_id == world["owner"].id
    assert "cancelled by Kagiso Molefe" in record.body

    by_provider = world["service"].transition(
        booking_id=_request(world).booking.id,
        actor_id=world["owner"].id,
        target=BookingStatus.cancelled,
        provider_notes="Rain forecast",
    )
    record = notifier.notify(by_provider.events[0])
    assert record.profile_id == world["client"].id
    assert "Cancellation reason: Rain forecast" in record.body


def test_recipient_table(world):
    event = _request(world).events[0]
    provider_profile = world["owner"].id
    client_id = world["client"].id

    assert recipient_for(event, provider_profile) == provider_profile
    for kind in (LifecycleEventKind.booking_confirmed, LifecycleEventKind.booking_completed):
        assert recipient_for(event.model_copy(update={"kind": kind}), provider_profile) == client_id


def test_delivery_failure_is_logged_and_swallowed(store, world, caplog):
    notifier = BookingNotifier(store=store, notifications=ExplodingNotifications(pusher=RecordingPushSender()))
    plan = _request(world)

    with caplog.at_level(logging.ERROR):
        assert notifier.notify(plan.events[0]) is None
    assert "Failed to dispatch booking_request" in caplog.text
    assert store.get_booking(plan.booking.id).status == BookingStatus.pending


def test_missing_booking_is_skipped(store, world):
    notifications = NotificationStore(pusher=RecordingPushSender())
    notifier = BookingNotifier(store=store, notifications=notifications)
    event = _request(world).events[0].model_copy(update={"booking_id": "bk_missing"})
    assert notifier.notify(event) is None
    assert notifications.list_for_profile(world["owner"].id) == []


def test_notification_inbox_read_state():
    notifications = NotificationStore(pusher=RecordingPushSender())
    first = notifications.create(profile_id="prf_a", title="One", body="1")
    notifications.create(profile_id="prf_a", title="Two", body="2")
    notifications.create(profile_id="prf_b", title="Other", body="x")

    assert [n.title for n in notifications.list_for_profile("prf_a")] == ["Two", "One"]
    assert notifications.mark_read("prf_b", first.id) is None
    assert notifications.mark_read("prf_a", first.id).read is True
    assert [n.title for n in notifications.list_for_profile("prf_a", unread_only=True)] == ["Two"]
    assert notifications.mark_all_read("prf_a") == 1
    assert notifications.list_for_profile("prf_a", unread_only=True) == []


def test_push_disabled_without_credentials():
    pusher = PushSender(credentials_path=None)
    pusher.register("prf_a", " device-1 ")
    pusher.register("prf_a", "")
    assert pusher.tokens_for("prf_a") == ["device-1"]
    assert pusher.enabled is False
    assert pusher.send_to_profile("prf_a", title="t", body="b", data={}) == 0


def test_welcome_differs_by_role(store, world):
    notifications = NotificationStore(pusher=RecordingPushSender())
    notifier = BookingNotifier(store=store, notifications=notifications)

    client_note = notifier.welcome(world["client"])
    owner_note = notifier.welcome(world["owner"])

    assert client_note.profile_id == world["client"].id
    assert client_note.category == "system"
    assert client_note.title.endswith("Kagiso!")
    assert "Book services that meet your needs" in client_note.body
    assert "Wait for approval from our team" in owner_note.body
    assert "Book services" not in owner_note.body


def test_welcome_failure_is_logged_and_swallowed(store, world, caplog):
    notifier = BookingNotifier(store=store, notifications=ExplodingNotifications(pusher=RecordingPushSender()))
    with caplog.at_level(logging.ERROR):
        assert notifier.welcome(world["client"]) is None
    assert "Failed to send welcome notification" in caplog.text


def test_render_welcome_greets_by_first_name(world):
    title, body = render_welcome(world["owner"])
    assert "Anele" in title
    assert body.startswith("Hi Anele,")
    assert "Next steps for service providers:" in body
