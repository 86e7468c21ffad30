"""
Back-office exception hierarchy.

Services raise these types; blueprints register handlers against them once
and get consistent HTTP status codes everywhere.

Usage:
    from backoffice.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="ExpenseApplication", resource_id=42)
    raise ValidationError("Comment is required", details={"comment": "required"})
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist.

    Maps to HTTP 404.

    Args:
        resource: Human-readable model/entity name (e.g. "WorkflowInstance").
        resource_id: The key that was looked up.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input fails business-rule validation in the service layer.

    Distinct from HTTP 400 (malformed input, caught in blueprint). This
    exception signals that the data was well-formed but violated a business
    rule (e.g. submitting an application that is already in approval).

    Maps to HTTP 422.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when an operation would duplicate a unique resource.

    Maps to HTTP 409.

    Args:
        resource: Model name.
        field: The unique field that would be duplicated.
        value: The conflicting value.
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        msg = f"{resource} with {field}={value!r} already exists"
        super().__init__(msg)


class AuthorizationError(Exception):
    """Raised when the acting user may not perform the operation.

    Maps to HTTP 403. Used when someone other than the task assignee (or
    their proxy) tries to act on an approval task.
    """

    def __init__(self, message: str, user_id: int | None = None) -> None:
        self.user_id = user_id
        super().__init__(message)


class WorkflowError(Exception):
    """Raised when the approval engine or orchestration cannot proceed.

    Maps to HTTP 409: the request was valid but the workflow state (or the
    deployed process definitions) does not allow it.
    """


class ApproverNotFoundError(WorkflowError):
    """No user could be resolved for an approval role, fallbacks included."""

    def __init__(self, role: str, detail: str | None = None) -> None:
        self.role = role
        msg = f"No approver could be resolved for role '{role}'"
        if detail:
            msg += f": {detail}"
        super().__init__(msg)


class TemplateNotAvailableError(WorkflowError):
    """No deployed process definition can serve a business type."""

    def __init__(self, business_type: str, detail: str | None = None) -> None:
        self.business_type = business_type
        msg = f"No workflow template available for business type '{business_type}'"
        if detail:
            msg += f" ({detail})"
        super().__init__(msg)
