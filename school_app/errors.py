class AppError(Exception):
    """Base error carried from services to the JSON error handler."""

    status_code = 400
    default_code = "bad_request"

    def __init__(self, message="", status_code=None, code=None, extra=None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.code = code or self.default_code
        self.extra = extra


class ValidationError(AppError):
    status_code = 400
    default_code = "validation_error"


class UnauthorizedError(AppError):
    status_code = 401
    default_code = "unauthorized"


class ForbiddenError(AppError):
    status_code = 403
    default_code = "forbidden"


class NotFoundError(AppError):
    status_code = 404
    default_code = "not_found"


class ConflictError(AppError):
    status_code = 409
    default_code = "conflict"


class DatabaseError(AppError):
    status_code = 500
    default_code = "database_error"
