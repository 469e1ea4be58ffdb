"""Domain errors raised by the billing core.

Each error carries the HTTP status an upstream controller should answer with.
"""

from __future__ import annotations


class BillingError(Exception):
    """Base class for all billing core errors."""

    status_code = 500

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class ValidationError(BillingError):
    """Malformed input to a compose or lifecycle operation."""

    status_code = 400


class InvalidCycleError(ValidationError):
    """Unknown billing cycle."""

    def __init__(self, cycle: object) -> None:
        self.cycle = cycle
        super().__init__(f"Unknown billing cycle: {cycle}")


class NotFoundError(BillingError):
    """A tenant-scoped entity does not exist."""

    status_code = 404

    def __init__(self, resource: str, resource_id: object | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        message = f"{resource} not found"
        if resource_id is not None:
            message = f"{resource} {resource_id} not found"
        super().__init__(message)


class ConflictError(BillingError):
    """Duplicate entity or a state that forbids the requested transition."""

    status_code = 409


class BusinessRuleError(BillingError):
    """Input is well-formed but violates a billing rule."""

    status_code = 422
