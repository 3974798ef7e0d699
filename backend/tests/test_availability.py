import os
import sys
from datetime import date, datetime, time

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from marketplace.models import AvailabilityRule, Booking, BookingStatus, RejectionReason
from marketplace.services.availability import (
    assert_slot_available,
    check_slot,
    day_of_week,
    open_slots,
    parse_time,
    validate_rules,
)
from marketplace.services.errors import (
    OutsideAvailability,
    PastDate,
    ProviderUnavailableThatDay,
    SlotConflict,
    ValidationError,
)

MONDAY = date(2030, 6, 3)
NOW = datetime(2030, 6, 1, 12, 0)
RULES = [AvailabilityRule(day_of_week=1, start_time="09:00", end_time="17:00")]


def _booking(start: str, duration: int = 60, status=BookingStatus.confirmed, booking_id="bk_existing") -> Booking:
    return Booking(
        id=booking_id,
        client_id="prf_client",
        provider_id="prv_1",
        listing_id="lst_1",
        scheduled_date=MONDAY.isoformat(),
        scheduled_time=start,
        duration_minutes=duration,
        status=status,
        created_at="2030-05-01T00:00:00+00:00",
        updated_at="2030-05-01T00:00:00+00:00",
    )


def test_sunday_is_day_zero():
    assert day_of_week(date(2030, 6, 2)) == 0
    assert day_of_week(MONDAY) == 1
    assert day_of_week(date(2030, 6, 8)) == 6


def test_slot_inside_window_is_available():
    verdict = check_slot(RULES, [], MONDAY, time(10, 0), 60, NOW)
    assert verdict.available is True
    assert verdict.reason is None


def test_slot_ending_exactly_at_close_is_available():
    assert check_slot(RULES, [], MONDAY, time(16, 0), 60, NOW).available


def test_slot_running_past_close_is_outside_availability():
    verdict = check_slot(RULES, [], MONDAY, time(16, 30), 60, NOW)
    assert verdict.reason == RejectionReason.outside_availability


def test_slot_before_open_is_outside_availability():
    verdict = check_slot(RULES, [], MONDAY, time(8, 30), 60, NOW)
    assert verdict.reason == RejectionReason.outside_availability


def test_day_without_rule_is_unavailable():
    verdict = check_slot(RULES, [], date(2030, 6, 4), time(10, 0), 60, NOW)
    assert verdict.reason == RejectionReason.provider_unavailable_that_day


def test_rule_marked_unavailable_counts_as_no_rule():
    rules = [AvailabilityRule(day_of_week=1, start_time="09:00", end_time="17:00", is_available=False)]
    verdict = check_slot(rules, [], MONDAY, time(10, 0), 60, NOW)
    assert verdict.reason == RejectionReason.provider_unavailable_that_day


def test_one_minute_overlap_conflicts():
    verdict = check_slot(RULES, [_booking("10:00")], MONDAY, time(10, 59), 60, NOW)
    assert verdict.reason == RejectionReason.slot_conflict


def test_back_to_back_bookings_do_not_conflict():
    assert check_slot(RULES, [_booking("10:00")], MONDAY, time(11, 0), 60, NOW).available
    assert check_slot(RULES, [_booking("10:00")], MONDAY, time(9, 0), 60, NOW).available


def test_pending_booking_blocks_slot():
    verdict = check_slot(RULES, [_booking("10:00", status=BookingStatus.pending)], MONDAY, time(10, 30), 30, NOW)
    assert verdict.reason == RejectionReason.slot_conflict


def test_cancelled_booking_does_not_block_slot():
    verdict = check_slot(RULES, [_booking("10:00", status=BookingStatus.cancelled)], MONDAY, time(10, 0), 60, NOW)
    assert verdict.available


def test_ignored_booking_does_not_conflict_with_itself():
    verdict = check_slot(RULES, [_booking("10:00")], MONDAY, time(10, 0), 60, NOW, ignore_booking_id="bk_existing")
    assert verdict.available


def test_past_slot_is_rejected_last():
    later = datetime(2030, 6, 3, 12, 0)
    assert check_slot(RULES, [], MONDAY, time(10, 0), 60, later).reason == RejectionReason.past_date
    # A conflicting past slot reports the conflict first.
    assert check_slot(RULES, [_booking("10:00")], MONDAY, time(10, 0), 60, later).reason == RejectionReason.slot_conflict


def test_slot_starting_now_is_past():
    now = datetime.combine(MONDAY, time(10, 0))
    assert check_slot(RULES, [], MONDAY, time(10, 0), 60, now).reason == RejectionReason.past_date


@pytest.mark.parametrize(
    "slot_date,start,bookings,error",
    [
        (date(2030, 6, 4), time(10, 0), [], ProviderUnavailableThatDay),
        (MONDAY, time(17, 0), [], OutsideAvailability),
        (MONDAY, time(10, 30), [_booking("10:00")], SlotConflict),
    ],
)
def test_assert_slot_available_raises_typed_rejection(slot_date, start, bookings, error):
    with pytest.raises(error) as excinfo:
        assert_slot_available(RULES, bookings, slot_date, start, 60, NOW)
    assert excinfo.value.reason == error.reason


def test_assert_slot_available_raises_past_date():
    with pytest.raises(PastDate):
        assert_slot_available(RULES, [], MONDAY, time(9, 0), 60, datetime(2030, 7, 1))


def test_zero_duration_is_invalid():
    with pytest.raises(ValidationError):
        check_slot(RULES, [], MONDAY, time(10, 0), 0, NOW)


def test_validate_rules_normalizes_and_sorts():
    rules = validate_rules(
        [
            AvailabilityRule(day_of_week=5, start_time="10:00:00", end_time="14:00"),
            AvailabilityRule(day_of_week=1, start_time="09:00", end_time="17:00"),
        ]
    )
    assert [r.day_of_week for r in rules] == [1, 5]
    assert rules[1].start_time == "10:00"


def test_validate_rules_rejects_duplicate_day():
    with pytest.raises(ValidationError):
        validate_rules(
            [
                AvailabilityRule(day_of_week=1, start_time="09:00", end_time="12:00"),
                AvailabilityRule(day_of_week=1, start_time="13:00", end_time="17:00"),
            ]
        )


def test_validate_rules_rejects_inverted_window():
    with pytest.raises(ValidationError):
        validate_rules([AvailabilityRule(day_of_week=2, start_time="17:00", end_time="09:00")])


def test_validate_rules_allows_inverted_window_when_unavailable():
    rules = validate_rules([AvailabilityRule(day_of_week=0, start_time="00:00", end_time="00:00", is_available=False)])
    assert rules[0].is_available is False


def test_open_slots_skip_booked_times():
    rules = [AvailabilityRule(day_of_week=1, start_time="09:00", end_time="12:00")]
    slots = open_slots(rules, [_booking("10:00")], MONDAY, 60, NOW)
    assert slots == ["09:00", "11:00"]


def test_open_slots_empty_on_day_off():
    assert open_slots(RULES, [], date(2030, 6, 4), 60, NOW) == []


@pytest.mark.parametrize("value", ["10:00+02:00", "10:00Z", "16:00:30", "16:00:00.5", "25:00", "ten"])
def test_parse_time_rejects_offsets_and_seconds(value):
    with pytest.raises(ValidationError):
        parse_time(value)


def test_parse_time_accepts_whole_minutes():
    assert parse_time("09:30") == time(9, 30)
    assert parse_time("09:30:00") == time(9, 30)
