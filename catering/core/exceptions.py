"""
Platform-wide exception hierarchy.

Services raise these types; the change-request saga converts them into
typed results and blueprints map them to HTTP status codes once.

Taxonomy:
    NotFoundError           invoice / quote / change request missing      → 404
    ValidationError         malformed patch, rejected before any write    → 422
    ConflictError           state changed underneath the caller           → 409
      OptimisticLockConflict   quote version check lost
      InvalidTransitionError   status move not in the transition table
      ChangeRequestAlreadyResolved  single-consumer gate on change requests
    PersistenceError        database write failed at a committed step     → 500

Usage:
    from catering.core.exceptions import NotFoundError, OptimisticLockConflict

    raise NotFoundError(resource="Invoice", resource_id=42)
    raise OptimisticLockConflict(resource="QuoteRequest", resource_id=7, expected_version=3)
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist.

    Args:
        resource: Human-readable model/entity name (e.g. "Invoice").
        resource_id: The PK that was looked up. Included in logs and messages.
    """

    code = "ERR_NOT_FOUND"

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input fails validation before any mutation happens.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown; keys are field names.
    """

    code = "ERR_VALIDATION_INVALID"

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Base for conflicts with the current persisted state. Maps to HTTP 409."""

    code = "ERR_CONFLICT_STATE"


class OptimisticLockConflict(ConflictError):
    """The version-checked write matched zero rows.

    The caller must re-read and retry with fresh data, or abort. The record
    is never overwritten silently.
    """

    code = "OPTIMISTIC_LOCK_CONFLICT"
    user_message = "This record changed, please refresh."

    def __init__(
        self,
        resource: str,
        resource_id: int | str,
        expected_version: int | None = None,
    ) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.expected_version = expected_version
        super().__init__(
            f"OPTIMISTIC_LOCK_CONFLICT: {resource} id={resource_id} was modified "
            f"by another user (expected version={expected_version})"
        )


class InvalidTransitionError(ConflictError):
    """A status move that the transition table does not allow."""

    code = "ERR_INVALID_TRANSITION"

    def __init__(self, entity_type: str, current: str, target: str, reason: str | None = None) -> None:
        self.entity_type = entity_type
        self.current_status = current
        self.target_status = target
        self.reason = reason
        msg = f"Cannot move {entity_type} from '{current}' to '{target}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class ChangeRequestAlreadyResolved(ConflictError):
    """The change request is resolved or held by a running approval."""

    code = "ERR_CONFLICT_STATE"

    def __init__(self, change_request_id: int, status: str) -> None:
        self.change_request_id = change_request_id
        self.status = status
        super().__init__(f"Change request id={change_request_id} is no longer open ({status})")


class PersistenceError(Exception):
    """A database write failed at a committed saga step.

    Args:
        step: Saga step name where the write failed.
        cause: The underlying exception (usually ``SQLAlchemyError``).
    """

    code = "ERR_DATABASE"

    def __init__(self, step: str, cause: Exception | None = None) -> None:
        self.step = step
        self.cause = cause
        msg = f"Database write failed during '{step}'"
        if cause is not None:
            msg += f": {cause}"
        super().__init__(msg)
