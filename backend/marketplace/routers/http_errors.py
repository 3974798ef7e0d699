from typing import NoReturn

from fastapi import HTTPException

from marketplace.services.errors import (
    BookingRejected,
    ConflictError,
    MarketplaceError,
    NotFoundError,
    PermissionDeniedError,
    SlotConflict,
)


def raise_http_error(exc: MarketplaceError) -> NoReturn:
    if isinstance(exc, NotFoundError):
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    if isinstance(exc, PermissionDeniedError):
        raise HTTPException(status_code=403, detail=str(exc)) from exc
    if isinstance(exc, BookingRejected):
        status_code = 409 if isinstance(exc, SlotConflict) else 400
        raise HTTPException(status_code=status_code, detail={"reason": exc.reason.value, "message": str(exc)}) from exc
    if isinstance(exc, ConflictError):
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    raise HTTPException(status_code=400, detail=str(exc)) from exc
