"""Booking status state machine.

Every legal move is listed in ``TRANSITIONS`` together with the roles that
may trigger it. ``plan_transition`` never touches storage: it returns the
booking as it should look after the move plus the lifecycle events the
caller should dispatch once the conditional write has succeeded.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, FrozenSet, List, Optional, Tuple
from uuid import uuid4

from marketplace.models import (
    Booking,
    BookingLifecycleEvent,
    BookingStatus,
    LifecycleEventKind,
    PriceType,
    Role,
    ServiceListing,
)
from marketplace.services.errors import InvalidTransition

DEFAULT_DURATION_MINUTES = 60

TRANSITIONS: Dict[Tuple[BookingStatus, BookingStatus], FrozenSet[Role]] = {
    (BookingStatus.pending, BookingStatus.confirmed): frozenset({Role.provider}),
    (BookingStatus.pending, BookingStatus.cancelled): frozenset({Role.client, Role.provider}),
    (BookingStatus.confirmed, BookingStatus.completed): frozenset({Role.provider}),
    (BookingStatus.confirmed, BookingStatus.cancelled): frozenset({Role.client, Role.provider}),
}

TERMINAL_STATUSES = frozenset({BookingStatus.completed, BookingStatus.cancelled})

EVENT_FOR_STATUS = {
    BookingStatus.pending: LifecycleEventKind.booking_request,
    BookingStatus.confirmed: LifecycleEventKind.booking_confirmed,
    BookingStatus.cancelled: LifecycleEventKind.booking_cancelled,
    BookingStatus.completed: LifecycleEventKind.booking_completed,
}


@dataclass
class TransitionPlan:
    booking: Booking
    changed: bool
    events: List[BookingLifecycleEvent] = field(default_factory=list)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def allowed_targets(status: BookingStatus, role: Role) -> List[BookingStatus]:
    return [to for (frm, to), roles in TRANSITIONS.items() if frm == status and role in roles]


def can_reach(target: BookingStatus, role: Role) -> bool:
    return any(to == target and role in roles for (_, to), roles in TRANSITIONS.items())


def lifecycle_event(booking: Booking, kind: LifecycleEventKind, actor_id: str) -> BookingLifecycleEvent:
    return BookingLifecycleEvent(
        kind=kind,
        booking_id=booking.id,
        client_id=booking.client_id,
        provider_id=booking.provider_id,
        actor_id=actor_id,
        occurred_at=_now_iso(),
    )


def compute_total_price(listing: ServiceListing, duration_minutes: Optional[int]) -> Optional[float]:
    if listing.price is None:
        return None
    if listing.price_type == PriceType.hourly and duration_minutes:
        return round(listing.price * duration_minutes / 60, 2)
    return round(listing.price, 2)


def new_booking(
    *,
    listing: ServiceListing,
    client_id: str,
    scheduled_date: str,
    scheduled_time: str,
    client_notes: str = "",
) -> TransitionPlan:
    now_iso = _now_iso()
    duration = listing.duration_minutes or DEFAULT_DURATION_MINUTES
    booking = Booking(
        id=f"bk_{uuid4().hex[:10]}",
        client_id=client_id,
        provider_id=listing.provider_id,
        listing_id=listing.id,
        scheduled_date=scheduled_date,
        scheduled_time=scheduled_time,
        duration_minutes=duration,
        total_price=compute_total_price(listing, listing.duration_minutes),
        client_notes=client_notes.strip(),
        status=BookingStatus.pending,
        version=1,
        created_at=now_iso,
        updated_at=now_iso,
    )
    event = lifecycle_event(booking, LifecycleEventKind.booking_request, actor_id=client_id)
    return TransitionPlan(booking=booking, changed=True, events=[event])


def plan_transition(
    booking: Booking,
    *,
    actor_id: str,
    actor_role: Role,
    target: BookingStatus,
    provider_notes: Optional[str] = None,
) -> TransitionPlan:
    current = booking.status
    if target == current and can_reach(target, actor_role):
        return TransitionPlan(booking=booking, changed=False)

    if current in TERMINAL_STATUSES:
        raise InvalidTransition(f"Booking is already {current.value}")

    roles = TRANSITIONS.get((current, target))
    if roles is None or actor_role not in roles:
        allowed = ", ".join(s.value for s in allowed_targets(current, actor_role)) or "none"
        raise InvalidTransition(
            f"A {actor_role.value} cannot move a booking from {current.value} to {target.value} (allowed: {allowed})"
        )

    update: Dict[str, object] = {
        "status": target,
        "version": booking.version + 1,
        "updated_at": _now_iso(),
    }
    if provider_notes and actor_role == Role.provider:
        update["provider_notes"] = provider_notes.strip()
    updated = booking.model_copy(update=update)
    event = lifecycle_event(updated, EVENT_FOR_STATUS[target], actor_id=actor_id)
    return TransitionPlan(booking=updated, changed=True, events=[event])
