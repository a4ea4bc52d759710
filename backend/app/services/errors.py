class MarketplaceError(ValueError):
    """Base class for user-visible service errors."""


class ValidationError(MarketplaceError):
    pass


class NotFoundError(MarketplaceError):
    pass


class ConflictError(MarketplaceError):
    pass


class ForbiddenError(MarketplaceError):
    pass


class UnauthorizedError(MarketplaceError):
    pass


class InvalidTransitionError(MarketplaceError):
    def __init__(self, current: str, requested: str) -> None:
        super().__init__(f"Cannot transition from {current} to {requested}")
        self.current = current
        self.requested = requested


class PaymentVerificationError(MarketplaceError):
    pass
