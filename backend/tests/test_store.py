import os
import sqlite3
import sys
from datetime import date

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from marketplace.models import AvailabilityRule, BookingStatus, PriceType, ProviderStatus, Review, Role
from marketplace.services.errors import (
    ConflictError,
    DuplicateReviewError,
    NotFoundError,
    PermissionDeniedError,
    SlotConflict,
    ValidationError,
)
from marketplace.services.lifecycle import new_booking, plan_transition
from marketplace.services.marketplace_store import MarketplaceStore


@pytest.fixture
def store(tmp_path):
    return MarketplaceStore(db_path=str(tmp_path / "marketplace.sqlite3"))


@pytest.fixture
def seeded(store):
    client = store.create_profile(role=Role.client, first_name="Thandi", last_name="Mokoena")
    owner = store.create_profile(role=Role.provider, first_name="Sipho", last_name="Dlamini")
    provider = store.create_provider(
        profile_id=owner.id,
        business_name="Sipho's Plumbing",
        skills=["Plumbing", " geysers "],
        hourly_rate=350,
    )
    store.set_provider_status(provider.id, ProviderStatus.approved)
    category = next(c for c in store.list_categories() if c.name == "Plumbing")
    listing = store.create_listing(
        actor_id=owner.id,
        category_id=category.id,
        title="Leak repair",
        description="Find and fix leaks",
        price=300,
        price_type=PriceType.hourly,
        duration_minutes=90,
    )
    store.replace_availability(
        provider_id=provider.id,
        actor_id=owner.id,
        rules=[AvailabilityRule(day_of_week=1, start_time="09:00", end_time="17:00")],
    )
    return {"client": client, "owner": owner, "provider": provider, "listing": listing}


def _book(store, seeded, start="09:00", scheduled_date="2030-06-03"):
    plan = new_booking(
        listing=seeded["listing"],
        client_id=seeded["client"].id,
        scheduled_date=scheduled_date,
        scheduled_time=start,
    )
    return store.insert_booking_if_free(plan.booking)


def test_categories_are_seeded_once(tmp_path):
    db_path = str(tmp_path / "seed.sqlite3")
    first = MarketplaceStore(db_path=db_path).list_categories()
    second = MarketplaceStore(db_path=db_path).list_categories()
    assert len(first) == len(second) == 8


def test_profile_role_cannot_change(store):
    profile = store.create_profile(role=Role.client, first_name="Ayanda")
    with pytest.raises(ValidationError):
        store.update_profile(profile_id=profile.id, actor_id=profile.id, role=Role.provider)
    updated = store.update_profile(profile_id=profile.id, actor_id=profile.id, location="Durban")
    assert updated.location == "Durban"
    assert updated.role == Role.client


def test_profile_update_by_someone_else_is_denied(store):
    profile = store.create_profile(role=Role.client, first_name="Ayanda")
    with pytest.raises(PermissionDeniedError):
        store.update_profile(profile_id=profile.id, actor_id="prf_other", first_name="X")


def test_client_profile_cannot_open_provider_business(store):
    client = store.create_profile(role=Role.client, first_name="Lerato")
    with pytest.raises(PermissionDeniedError):
        store.create_provider(profile_id=client.id, business_name="Nope")


def test_second_provider_business_for_profile_conflicts(store, seeded):
    with pytest.raises(ConflictError):
        store.create_provider(profile_id=seeded["owner"].id, business_name="Second")


def test_provider_skills_are_normalized(seeded):
    assert seeded["provider"].skills == ["geysers", "plumbing"]


def test_unapproved_providers_hidden_from_search(store, seeded):
    other_owner = store.create_profile(role=Role.provider, first_name="Pending")
    pending = store.create_provider(profile_id=other_owner.id, business_name="Pending Plumbing")

    visible = {p.id for p in store.list_providers()}
    assert seeded["provider"].id in visible
    assert pending.id not in visible
    assert pending.id in {p.id for p in store.list_providers(include_unverified=True)}


def test_provider_search_filters_by_skill(store, seeded):
    assert [p.id for p in store.list_providers(skill="plumbing")] == [seeded["provider"].id]
    assert store.list_providers(skill="tutoring") == []


def test_invalid_provider_sort_rejected(store):
    with pytest.raises(ValidationError, match="Invalid sort_by value"):
        store.list_providers(sort_by="oops")


def test_listing_needs_provider_business(store):
    client = store.create_profile(role=Role.client, first_name="Lerato")
    category = store.list_categories()[0]
    with pytest.raises(PermissionDeniedError):
        store.create_listing(actor_id=client.id, category_id=category.id, title="x", description="y")


def test_listing_unknown_category_not_found(store, seeded):
    with pytest.raises(NotFoundError):
        store.create_listing(
            actor_id=seeded["owner"].id,
            category_id="cat_missing",
            title="x",
            description="y",
        )


def test_inactive_listing_hidden_by_default(store, seeded):
    listing = seeded["listing"]
    store.set_listing_active(listing_id=listing.id, actor_id=seeded["owner"].id, is_active=False)
    assert listing.id not in {l.id for l in store.list_listings()}
    assert listing.id in {l.id for l in store.list_listings(include_inactive=True)}


def test_listing_update_by_non_owner_denied(store, seeded):
    with pytest.raises(PermissionDeniedError):
        store.update_listing(listing_id=seeded["listing"].id, actor_id=seeded["client"].id, title="Hijacked")


def test_listing_price_sort(store, seeded):
    cheap = store.create_listing(
        actor_id=seeded["owner"].id,
        category_id=seeded["listing"].category_id,
        title="Tap washer",
        description="Quick fix",
        price=120,
        price_type=PriceType.fixed,
    )
    ordered = [l.id for l in store.list_listings(sort_by="price_low")]
    assert ordered.index(cheap.id) < ordered.index(seeded["listing"].id)


def test_replace_availability_swaps_whole_week(store, seeded):
    provider_id = seeded["provider"].id
    store.replace_availability(
        provider_id=provider_id,
        actor_id=seeded["owner"].id,
        rules=[
            AvailabilityRule(day_of_week=2, start_time="08:00", end_time="12:00"),
            AvailabilityRule(day_of_week=4, start_time="13:00", end_time="18:00"),
        ],
    )
    assert [r.day_of_week for r in store.list_availability_rules(provider_id)] == [2, 4]


def test_replace_availability_rejected_rules_keep_old_week(store, seeded):
    provider_id = seeded["provider"].id
    with pytest.raises(ValidationError):
        store.replace_availability(
            provider_id=provider_id,
            actor_id=seeded["owner"].id,
            rules=[
                AvailabilityRule(day_of_week=3, start_time="09:00", end_time="10:00"),
                AvailabilityRule(day_of_week=3, start_time="11:00", end_time="12:00"),
            ],
        )
    assert [r.day_of_week for r in store.list_availability_rules(provider_id)] == [1]


def test_replace_availability_by_non_owner_denied(store, seeded):
    with pytest.raises(PermissionDeniedError):
        store.replace_availability(provider_id=seeded["provider"].id, actor_id=seeded["client"].id, rules=[])


def test_insert_booking_if_free_rejects_overlap(store, seeded):
    first = _book(store, seeded, "09:00")
    assert store.get_booking(first.id).status == BookingStatus.pending
    with pytest.raises(SlotConflict):
        _book(store, seeded, "10:29")
    # 90 minute booking ends at 10:30.
    _book(store, seeded, "10:30")
    assert len(store.list_active_bookings(seeded["provider"].id, date.fromisoformat(first.scheduled_date))) == 2


def test_insert_booking_records_history(store, seeded):
    booking = _book(store, seeded)
    history = store.list_booking_history(booking.id)
    assert len(history) == 1
    assert history[0].from_status is None
    assert history[0].to_status == BookingStatus.pending


def test_conditional_update_applies_and_appends_history(store, seeded):
    booking = _book(store, seeded)
    plan = plan_transition(
        booking,
        actor_id=seeded["owner"].id,
        actor_role=Role.provider,
        target=BookingStatus.confirmed,
    )
    stored = store.conditional_update_booking(
        booking_id=booking.id,
        expected_status=booking.status,
        expected_version=booking.version,
        updated=plan.booking,
        actor_id=seeded["owner"].id,
        require_free_slot=True,
    )
    assert stored.status == BookingStatus.confirmed
    assert stored.version == 2
    assert [h.to_status for h in store.list_booking_history(booking.id)] == [
        BookingStatus.pending,
        BookingStatus.confirmed,
    ]


def test_conditional_update_with_stale_version_conflicts(store, seeded):
    booking = _book(store, seeded)
    confirm = plan_transition(booking, actor_id="p", actor_role=Role.provider, target=BookingStatus.confirmed)
    cancel = plan_transition(booking, actor_id="c", actor_role=Role.client, target=BookingStatus.cancelled)
    store.conditional_update_booking(
        booking_id=booking.id,
        expected_status=booking.status,
        expected_version=booking.version,
        updated=cancel.booking,
        actor_id="c",
    )
    with pytest.raises(ConflictError):
        store.conditional_update_booking(
            booking_id=booking.id,
            expected_status=booking.status,
            expected_version=booking.version,
            updated=confirm.booking,
            actor_id="p",
        )
    assert store.get_booking(booking.id).status == BookingStatus.cancelled


def test_conditional_update_missing_booking_not_found(store, seeded):
    booking = _book(store, seeded)
    plan = plan_transition(booking, actor_id="c", actor_role=Role.client, target=BookingStatus.cancelled)
    with pytest.raises(NotFoundError):
        store.conditional_update_booking(
            booking_id="bk_missing",
            expected_status=booking.status,
            expected_version=booking.version,
            updated=plan.booking,
            actor_id="c",
        )


def test_confirm_rechecks_against_confirmed_bookings(store, seeded):
    first = _book(store, seeded, "09:00")
    # Overlapping pending rows can exist when written outside insert_booking_if_free.
    overlapping = new_booking(
        listing=seeded["listing"],
        client_id=seeded["client"].id,
        scheduled_date="2030-06-03",
        scheduled_time="10:00",
    ).booking
    with sqlite3.connect(store.db_path) as conn:
        conn.execute(
            """
            INSERT INTO bookings (
                id, client_id, provider_id, listing_id, scheduled_date, scheduled_time,
                duration_minutes, total_price, client_notes, provider_notes, status,
                version, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, '', '', 'pending', 1, ?, ?)
            """,
            (
                overlapping.id,
                overlapping.client_id,
                overlapping.provider_id,
                overlapping.listing_id,
                overlapping.scheduled_date,
                overlapping.scheduled_time,
                overlapping.duration_minutes,
                overlapping.total_price,
                overlapping.created_at,
                overlapping.updated_at,
            ),
        )
        conn.commit()

    confirm_first = plan_transition(first, actor_id="p", actor_role=Role.provider, target=BookingStatus.confirmed)
    store.conditional_update_booking(
        booking_id=first.id,
        expected_status=first.status,
        expected_version=first.version,
        updated=confirm_first.booking,
        actor_id="p",
        require_free_slot=True,
    )

    confirm_second = plan_transition(overlapping, actor_id="p", actor_role=Role.provider, target=BookingStatus.confirmed)
    with pytest.raises(SlotConflict):
        store.conditional_update_booking(
            booking_id=overlapping.id,
            expected_status=overlapping.status,
            expected_version=overlapping.version,
            updated=confirm_second.booking,
            actor_id="p",
            require_free_slot=True,
        )
    assert store.get_booking(overlapping.id).status == BookingStatus.pending


def test_list_bookings_by_role(store, seeded):
    booking = _book(store, seeded)
    client_id = seeded["client"].id
    owner_id = seeded["owner"].id
    assert [b.id for b in store.list_bookings(client_id, role="client")] == [booking.id]
    assert store.list_bookings(client_id, role="provider") == []
    assert [b.id for b in store.list_bookings(owner_id, role="provider")] == [booking.id]
    assert [b.id for b in store.list_bookings(owner_id)] == [booking.id]
    with pytest.raises(ValidationError, match="Invalid role value"):
        store.list_bookings(client_id, role="admin")


def _review(booking, rating, review_id):
    return Review(
        id=review_id,
        booking_id=booking.id,
        provider_id=booking.provider_id,
        reviewer_id=booking.client_id,
        rating=rating,
        created_at="2030-06-04T10:00:00+00:00",
    )


def test_review_updates_provider_average(store, seeded):
    first = _book(store, seeded, "09:00")
    second = _book(store, seeded, "12:00")
    third = _book(store, seeded, "15:00")
    store.insert_review(_review(first, 5, "rev_1"))
    store.insert_review(_review(second, 4, "rev_2"))
    store.insert_review(_review(third, 4, "rev_3"))

    provider = store.get_provider(seeded["provider"].id)
    assert provider.total_reviews == 3
    assert provider.average_rating == 4.33
    assert len(store.list_reviews(provider.id)) == 3


def test_second_review_for_booking_rejected(store, seeded):
    booking = _book(store, seeded)
    store.insert_review(_review(booking, 5, "rev_1"))
    with pytest.raises(DuplicateReviewError):
        store.insert_review(_review(booking, 1, "rev_2"))
    provider = store.get_provider(seeded["provider"].id)
    assert provider.total_reviews == 1
    assert provider.average_rating == 5.0


def test_messages_between_booking_parties(store, seeded):
    booking = _book(store, seeded)
    client_id = seeded["client"].id
    owner_id = seeded["owner"].id
    store.send_message(sender_id=client_id, receiver_id=owner_id, content="Is parking available?", booking_id=booking.id)
    store.send_message(sender_id=owner_id, receiver_id=client_id, content="Yes, out front.")

    thread = store.list_conversation(client_id, owner_id)
    assert [m.content for m in thread] == ["Is parking available?", "Yes, out front."]

    summaries = store.list_conversations(client_id)
    assert len(summaries) == 1
    assert summaries[0].other_id == owner_id
    assert summaries[0].other_name == "Sipho Dlamini"
    assert summaries[0].last_message.content == "Yes, out front."


def test_message_about_someone_elses_booking_denied(store, seeded):
    booking = _book(store, seeded)
    stranger = store.create_profile(role=Role.client, first_name="Stranger")
    with pytest.raises(PermissionDeniedError):
        store.send_message(
            sender_id=stranger.id,
            receiver_id=seeded["owner"].id,
            content="hello",
            booking_id=booking.id,
        )


def test_message_validation(store, seeded):
    client_id = seeded["client"].id
    with pytest.raises(ValidationError):
        store.send_message(sender_id=client_id, receiver_id=client_id, content="me")
    with pytest.raises(ValidationError):
        store.send_message(sender_id=client_id, receiver_id=seeded["owner"].id, content="   ")
    with pytest.raises(NotFoundError):
        store.send_message(sender_id=client_id, receiver_id="prf_missing", content="hi")
