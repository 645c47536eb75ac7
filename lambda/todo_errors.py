from __future__ import annotations


class TodoError(Exception):
    """Request-terminal failure carrying its HTTP mapping."""

    status_code = 500
    default_code = "INTERNAL_ERROR"

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.error_code = code or self.default_code


class ValidationError(TodoError):
    status_code = 400
    default_code = "INVALID_REQUEST"


class Unauthenticated(TodoError):
    status_code = 401
    default_code = "UNAUTHORIZED"

    def __init__(self, message: str = "authentication required", *, code: str | None = None) -> None:
        super().__init__(message, code=code)


class Forbidden(TodoError):
    status_code = 403
    default_code = "FORBIDDEN"


class NotFound(TodoError):
    status_code = 404
    default_code = "TASK_NOT_FOUND"


class StoreError(TodoError):
    status_code = 500
    default_code = "STORE_ERROR"
