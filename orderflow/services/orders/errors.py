"""
Order workflow error taxonomy.

Every error raised to callers of the order service derives from
OrderWorkflowError and carries structured context that the API layer
returns alongside the message.
"""

from typing import Any, Iterable, Optional


class OrderWorkflowError(Exception):
    """Base exception for order workflow operations."""

    error_code = "order_workflow_error"

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context


class UnauthorizedError(OrderWorkflowError):
    """Actor's role may not perform the requested action."""

    error_code = "unauthorized"

    def __init__(self, message: str, role: Optional[str] = None,
                 action: Optional[str] = None, **context: Any):
        super().__init__(message, role=role, action=action, **context)
        self.role = role
        self.action = action


class NotFoundError(OrderWorkflowError):
    """Referenced entity does not exist for the caller."""

    error_code = "not_found"


class OrderNotFoundError(NotFoundError):
    """Referenced order does not exist."""


class NotificationNotFoundError(NotFoundError):
    """Notification does not exist or belongs to another user."""


class InvalidStateError(OrderWorkflowError):
    """Order's current status does not permit the action."""

    error_code = "invalid_state"

    def __init__(
        self,
        message: str,
        current_status: str,
        action: str,
        allowed_from: Iterable[str] = (),
        **context: Any,
    ):
        allowed = sorted(allowed_from)
        super().__init__(
            message,
            current_status=current_status,
            action=action,
            allowed_from=allowed,
            **context,
        )
        self.current_status = current_status
        self.action = action
        self.allowed_from = allowed


class ValidationFailedError(OrderWorkflowError):
    """Required inputs are missing or malformed."""

    error_code = "validation_failed"

    def __init__(self, message: str, fields: dict[str, str], **context: Any):
        super().__init__(message, fields=fields, **context)
        self.fields = fields


class ConflictError(OrderWorkflowError):
    """A concurrent writer changed the order first."""

    error_code = "conflict"


class OrderPersistenceError(OrderWorkflowError):
    """The store rejected or failed a write; nothing was committed."""

    error_code = "persistence_error"
