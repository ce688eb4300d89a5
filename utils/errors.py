"""Domain error taxonomy raised by the membership services and mapped to HTTP responses in app.py."""


class MembershipServiceError(Exception):
    """Base class for errors the HTTP layer turns into a JSON response."""

    status_code = 400
    public_message = "Request could not be processed"

    def __init__(self, message: str | None = None, *, details: dict | None = None) -> None:
        super().__init__(message or self.public_message)
        self.message = message or self.public_message
        self.details = details or {}

    def to_payload(self) -> dict:
        return {"ok": False, "error": self.message}


class ValidationError(MembershipServiceError):
    status_code = 400
    public_message = "Invalid request"


def raise_for_form(form) -> None:
    """Turn the first WTForms field error into a ValidationError."""
    for field_name, messages in form.errors.items():
        if messages:
            label = getattr(getattr(form, field_name, None), "label", None)
            prefix = f"{label.text}: " if label is not None else ""
            raise ValidationError(f"{prefix}{messages[0]}")
    raise ValidationError()


class NotFoundError(MembershipServiceError):
    status_code = 404
    public_message = "Not found"


class AuthorizationError(MembershipServiceError):
    """Scope or role check failed. The reason stays in the logs, never in the response."""

    status_code = 403
    public_message = "Forbidden"

    def to_payload(self) -> dict:
        return {"ok": False, "error": self.public_message}


class StateConflictError(MembershipServiceError):
    status_code = 400
    public_message = "Action not allowed in the current state"


class ConcurrencyConflictError(MembershipServiceError):
    status_code = 409
    public_message = "Already claimed by someone else"


class ExternalServiceError(MembershipServiceError):
    status_code = 500
    public_message = "Document pending, please retry"


class RateLimitError(MembershipServiceError):
    status_code = 429
    public_message = "Too many requests. Please try again later."
