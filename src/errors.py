# errors.py
# Error taxonomy shared by every handler. Each class carries the HTTP status it maps to.

from typing import Optional

MAX_ERROR_MESSAGE_LENGTH = 500


def truncate_message(message: str, limit: int = MAX_ERROR_MESSAGE_LENGTH) -> str:
    s = " ".join(str(message or "").split())
    return s if len(s) <= limit else s[:limit]


class MiddlewareError(Exception):
    """Base class for errors that surface as a specific HTTP status."""

    status_code = 500

    def __init__(self, message: str = "", status_code: Optional[int] = None):
        self.message = message or self.__class__.__name__
        if status_code is not None:
            self.status_code = status_code
        super().__init__(self.message)


class ValidationError(MiddlewareError):
    status_code = 400


class AuthError(MiddlewareError):
    status_code = 401

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message)


class NotFoundError(MiddlewareError):
    status_code = 404


class DependencyError(MiddlewareError):
    """Caspio (or another upstream) was unreachable or answered with a non-success status."""

    status_code = 500

    def __init__(self, message: str = "Upstream dependency failed", upstream_status: Optional[int] = None):
        self.upstream_status = upstream_status
        super().__init__(truncate_message(message))


class ConfigError(MiddlewareError):
    status_code = 500
