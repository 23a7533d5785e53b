"""
Domain errors raised by the pricing and billing services.

The API layer maps these to HTTP status codes; everything else lets them
propagate to the caller.
"""
from typing import Any, Optional


class PricingError(Exception):
    """Base exception for all pricing and billing errors.

    Attributes:
        code: Machine-readable error code (e.g. ``"override_already_approved"``).
        details: Arbitrary key/value context about the error.
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}


class NotFoundError(PricingError):
    """A model, scope, override, cycle or audit entry does not exist for the tenant."""


class InvalidStateError(PricingError):
    """The requested operation is not legal in the entity's current state."""


class ValidationError(PricingError):
    """Input data is malformed (unknown operator, missing end date, ...)."""


class StoreUnavailableError(PricingError):
    """The relational store could not be reached or the pool is exhausted."""
