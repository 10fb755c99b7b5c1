"""
Domain errors raised by the service layer.

Each error carries the HTTP status it maps to; main.py renders them as
``{"detail": message}`` through a single exception handler.
"""


class DomainError(Exception):
    status_code = 500
    default_message = "Internal error"

    def __init__(self, message: str = None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message


class ValidationError(DomainError):
    status_code = 400
    default_message = "Invalid request"


class DuplicateEmail(ValidationError):
    default_message = "Email already registered"


class AuthError(DomainError):
    status_code = 401
    default_message = "Authentication required"


class InvalidCredentials(AuthError):
    default_message = "Invalid credentials"


class ForbiddenError(DomainError):
    status_code = 403
    default_message = "Not allowed"


class NotFoundError(DomainError):
    status_code = 404
    default_message = "Not found"


class ConflictError(DomainError):
    status_code = 409
    default_message = "Conflict"


class InvalidTransition(ConflictError):
    def __init__(self, current: str, target: str):
        super().__init__(f"Cannot move order from {current} to {target}")
        self.current = current
        self.target = target


class UpstreamUnavailable(DomainError):
    status_code = 503
    default_message = "Database not available"


class FileTooLarge(ValidationError):
    status_code = 413
    default_message = "File too large"
