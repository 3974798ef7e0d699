from marketplace.models import RejectionReason


class MarketplaceError(ValueError):
    """Base class for user-visible marketplace errors."""


class ValidationError(MarketplaceError):
    pass


class NotFoundError(MarketplaceError):
    pass


class PermissionDeniedError(MarketplaceError):
    pass


class ConflictError(MarketplaceError):
    """The stored record changed between read and conditional write."""


class DuplicateReviewError(ConflictError):
    pass


class InvalidTransition(MarketplaceError):
    pass


class BookingRejected(MarketplaceError):
    reason: RejectionReason


class OutsideAvailability(BookingRejected):
    reason = RejectionReason.outside_availability


class SlotConflict(BookingRejected):
    reason = RejectionReason.slot_conflict


class PastDate(BookingRejected):
    reason = RejectionReason.past_date


class ProviderUnavailableThatDay(BookingRejected):
    reason = RejectionReason.provider_unavailable_that_day


REJECTION_ERRORS = {
    RejectionReason.outside_availability: OutsideAvailability,
    RejectionReason.slot_conflict: SlotConflict,
    RejectionReason.past_date: PastDate,
    RejectionReason.provider_unavailable_that_day: ProviderUnavailableThatDay,
}
