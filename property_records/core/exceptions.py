"""
Domain exception hierarchy.

Services raise these; they never build HTTP responses themselves.  Every
blueprint registers handlers against ``DomainError`` once and gets the same
``{success, error, code}`` envelope and status code everywhere.

Usage:
    from property_records.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="ApprovalRequest", resource_id=42)
    raise ValidationError("Invalid workflow", details={"steps": "..."})
"""


class DomainError(Exception):
    """Base class for expected business failures.

    ``code`` is the machine-readable error code and ``http_status`` the
    status the API boundary returns for it.
    """

    code = "ERR_INTERNAL"
    http_status = 500

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class ValidationError(DomainError):
    """Input was well-formed but broke a business rule.

    Args:
        message: Human-readable explanation of what failed.
        details: Field-level breakdown.  Keys are field names (``steps[1].role_id``
                 for nested step fields); values are error descriptions.
    """

    code = "ERR_VALIDATION_INVALID"
    http_status = 422

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class NotFoundError(DomainError):
    """A referenced record does not exist in the caller's scope.

    Used for BOTH genuinely missing records and records that belong to
    another business unit, so a 404 never confirms existence.
    """

    code = "ERR_NOT_FOUND"
    http_status = 404

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ForbiddenError(DomainError):
    """The actor lacks the role or permission the operation requires."""

    code = "ERR_FORBIDDEN"
    http_status = 403


class ConflictError(DomainError):
    """Duplicate or concurrent operation: unique name taken, step already
    answered, request moved on under us, record still referenced."""

    code = "ERR_CONFLICT_DUPLICATE"
    http_status = 409


class InvalidStateError(DomainError):
    """The target is not in a state that permits the operation
    (terminal request, inactive workflow, ineligible property)."""

    code = "ERR_CONFLICT_STATE"
    http_status = 409
