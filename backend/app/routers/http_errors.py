from typing import NoReturn

from fastapi import HTTPException

from app.services.errors import (
    ConflictError,
    ForbiddenError,
    MarketplaceError,
    NotFoundError,
    PaymentVerificationError,
    UnauthorizedError,
)


def raise_http_error(exc: MarketplaceError) -> NoReturn:
    if isinstance(exc, NotFoundError):
        raise HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, ForbiddenError):
        raise HTTPException(status_code=403, detail=str(exc))
    if isinstance(exc, UnauthorizedError):
        raise HTTPException(status_code=401, detail=str(exc))
    if isinstance(exc, ConflictError):
        raise HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, PaymentVerificationError):
        raise HTTPException(status_code=402, detail=str(exc))
    raise HTTPException(status_code=400, detail=str(exc))
