"""Exceptions shared by the clinic modules."""


class AuthorizationError(RuntimeError):
    """Raised when a user action is not permitted."""


class ValidationError(RuntimeError):
    """Raised when incoming data fails validation."""


class NotFoundError(ValidationError):
    """Raised when a referenced record does not exist."""


class DateTimeError(ValidationError):
    """Raised when a date/time pair cannot be combined into an instant."""
