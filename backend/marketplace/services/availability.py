"""Decides whether a provider can take a booking at a given date and time.

Weekly rules use the day numbering of the schedule editor: 0 is Sunday and
6 is Saturday. Time windows are compared in whole minutes since midnight,
and two bookings overlap only when their open intervals intersect, so a
booking ending at 10:00 does not clash with one starting at 10:00.
"""

from datetime import date, datetime, time
from typing import Iterable, List, Optional

from marketplace.models import AvailabilityRule, AvailabilityVerdict, Booking, BookingStatus, RejectionReason
from marketplace.services.errors import REJECTION_ERRORS, ValidationError

ACTIVE_BOOKING_STATUSES = {BookingStatus.pending, BookingStatus.confirmed}
SLOT_STEP_MINUTES = 30
MINUTES_PER_DAY = 24 * 60

REJECTION_MESSAGES = {
    RejectionReason.provider_unavailable_that_day: "Provider is not available on that day",
    RejectionReason.outside_availability: "Requested time is outside the provider's working hours",
    RejectionReason.slot_conflict: "Requested time overlaps an existing booking",
    RejectionReason.past_date: "Requested time is in the past",
}


def parse_date(value: str, *, field: str = "date") -> date:
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise ValidationError(f"Invalid {field}; expected YYYY-MM-DD") from exc


def parse_time(value: str, *, field: str = "time") -> time:
    try:
        parsed = time.fromisoformat(value)
    except ValueError as exc:
        raise ValidationError(f"Invalid {field}; expected HH:MM") from exc
    # Slots are naive local wall-clock minutes.
    if parsed.tzinfo is not None or parsed.second or parsed.microsecond:
        raise ValidationError(f"Invalid {field}; expected HH:MM")
    return parsed


def day_of_week(value: date) -> int:
    return (value.weekday() + 1) % 7


def _minutes(value: time) -> int:
    return value.hour * 60 + value.minute


def _format_minutes(total: int) -> str:
    return f"{total // 60:02d}:{total % 60:02d}"


def validate_rules(rules: Iterable[AvailabilityRule]) -> List[AvailabilityRule]:
    seen: set[int] = set()
    normalized: List[AvailabilityRule] = []
    for rule in rules:
        if rule.day_of_week < 0 or rule.day_of_week > 6:
            raise ValidationError("day_of_week must be between 0 and 6")
        if rule.day_of_week in seen:
            raise ValidationError(f"Duplicate availability rule for day {rule.day_of_week}")
        seen.add(rule.day_of_week)
        start = parse_time(rule.start_time, field="start_time")
        end = parse_time(rule.end_time, field="end_time")
        if rule.is_available and _minutes(start) >= _minutes(end):
            raise ValidationError("start_time must be before end_time")
        normalized.append(
            AvailabilityRule(
                day_of_week=rule.day_of_week,
                start_time=start.strftime("%H:%M"),
                end_time=end.strftime("%H:%M"),
                is_available=rule.is_available,
            )
        )
    normalized.sort(key=lambda r: r.day_of_week)
    return normalized


def _rule_for_day(rules: Iterable[AvailabilityRule], slot_date: date) -> Optional[AvailabilityRule]:
    weekday = day_of_week(slot_date)
    for rule in rules:
        if rule.day_of_week == weekday and rule.is_available:
            return rule
    return None


def find_overlap(
    bookings: Iterable[Booking],
    slot_date: date,
    start_time: time,
    duration_minutes: int,
    ignore_booking_id: Optional[str] = None,
    statuses: Iterable[BookingStatus] = ACTIVE_BOOKING_STATUSES,
) -> Optional[Booking]:
    blocking = set(statuses)
    start = _minutes(start_time)
    end = start + duration_minutes
    target_date = slot_date.isoformat()
    for booking in bookings:
        if booking.id == ignore_booking_id:
            continue
        if booking.status not in blocking or booking.scheduled_date != target_date:
            continue
        other_start = _minutes(parse_time(booking.scheduled_time))
        other_end = other_start + booking.duration_minutes
        if start < other_end and other_start < end:
            return booking
    return None


def check_slot(
    rules: Iterable[AvailabilityRule],
    bookings: Iterable[Booking],
    slot_date: date,
    start_time: time,
    duration_minutes: int,
    now: datetime,
    ignore_booking_id: Optional[str] = None,
) -> AvailabilityVerdict:
    if duration_minutes <= 0:
        raise ValidationError("duration_minutes must be greater than 0")

    rule = _rule_for_day(rules, slot_date)
    if rule is None:
        return AvailabilityVerdict(available=False, reason=RejectionReason.provider_unavailable_that_day)

    start = _minutes(start_time)
    end = start + duration_minutes
    window_start = _minutes(parse_time(rule.start_time))
    window_end = _minutes(parse_time(rule.end_time))
    if start < window_start or end > window_end:
        return AvailabilityVerdict(available=False, reason=RejectionReason.outside_availability)

    if find_overlap(bookings, slot_date, start_time, duration_minutes, ignore_booking_id=ignore_booking_id):
        return AvailabilityVerdict(available=False, reason=RejectionReason.slot_conflict)

    if datetime.combine(slot_date, start_time) <= now:
        return AvailabilityVerdict(available=False, reason=RejectionReason.past_date)

    return AvailabilityVerdict(available=True)


def assert_slot_available(
    rules: Iterable[AvailabilityRule],
    bookings: Iterable[Booking],
    slot_date: date,
    start_time: time,
    duration_minutes: int,
    now: datetime,
    ignore_booking_id: Optional[str] = None,
) -> None:
    verdict = check_slot(
        rules,
        bookings,
        slot_date,
        start_time,
        duration_minutes,
        now,
        ignore_booking_id=ignore_booking_id,
    )
    if not verdict.available:
        assert verdict.reason is not None
        raise REJECTION_ERRORS[verdict.reason](REJECTION_MESSAGES[verdict.reason])


def open_slots(
    rules: Iterable[AvailabilityRule],
    bookings: Iterable[Booking],
    slot_date: date,
    duration_minutes: int,
    now: datetime,
    step_minutes: int = SLOT_STEP_MINUTES,
) -> List[str]:
    rules = list(rules)
    bookings = list(bookings)
    rule = _rule_for_day(rules, slot_date)
    if rule is None:
        return []
    slots: List[str] = []
    cursor = _minutes(parse_time(rule.start_time))
    while cursor + duration_minutes <= min(_minutes(parse_time(rule.end_time)), MINUTES_PER_DAY):
        candidate = parse_time(_format_minutes(cursor))
        verdict = check_slot(rules, bookings, slot_date, candidate, duration_minutes, now)
        if verdict.available:
            slots.append(_format_minutes(cursor))
        cursor += step_minutes
    return slots
