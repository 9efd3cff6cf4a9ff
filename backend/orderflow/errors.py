"""
Order lifecycle error taxonomy.

Every error here is terminal for the request that raised it: services never
retry a failed transition or a lost claim on the caller's behalf. Routes turn
them into JSON bodies with `to_dict()` and the class `status_code`.
"""

from __future__ import annotations


class OrderflowError(Exception):
    """Base class for domain errors raised by the order subsystem."""
    status_code = 400
    code = "orderflow_error"
    default_message = "Request could not be processed"

    def __init__(self, message: str | None = None, details: dict | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)
        self.details = details or {}

    def to_dict(self) -> dict:
        return {"error": self.message, "code": self.code, "details": self.details}


class ValidationError(OrderflowError):
    """400-level input problem (monetary or quantity invariant violated)."""
    code = "validation_error"
    default_message = "Invalid order data"


class NotFoundError(OrderflowError):
    status_code = 404
    code = "not_found"
    default_message = "Not found"


class AuthorizationError(OrderflowError):
    """Actor is authenticated but not entitled to mutate this order."""
    status_code = 403
    code = "not_authorized"
    default_message = "You are not allowed to change this order"


class ConflictError(OrderflowError):
    """A conditional write found the record in a different state than expected."""
    status_code = 409
    code = "conflict"
    default_message = "This order was changed by someone else. Refresh and try again."


class InvalidTransitionError(OrderflowError):
    status_code = 409
    code = "invalid_transition"
    default_message = "This order cannot be moved to that status from its current state"


class AlreadyClaimedError(ConflictError):
    """Lost a claim race; the caller must refetch before deciding to retry."""
    code = "already_claimed"
    default_message = "Order already taken"


class CapacityExceededError(OrderflowError):
    status_code = 409
    code = "capacity_exceeded"
    default_message = "You are at your order limit"


class StaffUnavailableError(OrderflowError):
    status_code = 409
    code = "staff_offline"
    default_message = "You must be online to claim orders"


class WorkloadInvariantError(OrderflowError):
    """A release was attempted without a matching reservation."""
    status_code = 500
    code = "workload_invariant"
    default_message = "Staff workload counter is out of balance"
