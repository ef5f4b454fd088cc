"""
Negotiation error taxonomy.

WHAT: Domain exceptions carrying a stable error code
WHY: Callers get an explicit code for every rejected operation
HOW: BusinessException base with code/details; HTTP mapping lives in the error handler
"""

from typing import Optional, Any


class BusinessException(Exception):
    """Base class for business logic exceptions."""

    code = "BUSINESS_ERROR"

    def __init__(self, message: str, code: Optional[str] = None, details: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.code
        self.details = details


class NotFoundError(BusinessException):
    """Listing or conversation does not exist."""

    code = "NOT_FOUND"

    def __init__(self, entity: str, entity_id: str):
        super().__init__(
            message=f"{entity.capitalize()} not found: {entity_id}",
            details={"entity": entity, "id": entity_id}
        )


class ConflictError(BusinessException):
    """
    A compare-and-swap on a listing lost a race.

    Raised by the listing store; the claim arbiter turns it into AlreadyClaimedError.
    """

    code = "CONFLICT"

    def __init__(self, listing_id: str, expected: str, actual: Optional[str] = None):
        super().__init__(
            message=f"Listing {listing_id} is not {expected}",
            details={"listing_id": listing_id, "expected": expected, "actual": actual}
        )
        self.listing_id = listing_id


class AlreadyClaimedError(BusinessException):
    """Listing is reserved or archived by another conversation."""

    code = "ALREADY_CLAIMED"

    def __init__(self, listing_id: str, message: Optional[str] = None):
        super().__init__(
            message=message or f"Listing {listing_id} is no longer available",
            details={"listing_id": listing_id}
        )
        self.listing_id = listing_id


class InvalidStateError(BusinessException):
    """Operation is not legal in the conversation's current negotiation state."""

    code = "INVALID_STATE"

    def __init__(self, message: str, current_state: Optional[str] = None):
        super().__init__(
            message=message,
            details={"current_state": current_state} if current_state else None
        )


class ForbiddenError(BusinessException):
    """Actor is not the owner or a participant."""

    code = "FORBIDDEN"

    def __init__(self, message: str):
        super().__init__(message=message)


class ValidationError(BusinessException):
    """Malformed proposal or request."""

    code = "VALIDATION_ERROR"

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(
            message=message,
            details={"field": field} if field else None
        )
