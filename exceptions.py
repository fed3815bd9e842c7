# exceptions.py
"""Error taxonomy shared by the services and rendered as JSON by app.py."""


class AppError(Exception):
    status_code = 500
    error = "internal_error"

    def __init__(self, message=None, **extra):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        self.extra = extra

    def to_dict(self):
        body = {"error": self.error, "message": self.message}
        body.update(self.extra)
        return body


class ValidationError(AppError):
    status_code = 400
    error = "validation_error"

    def __init__(self, message="Invalid input", fields=None):
        super().__init__(message, fields=fields or {})


class Unauthorized(AppError):
    status_code = 401
    error = "unauthorized"


class Forbidden(AppError):
    status_code = 403
    error = "forbidden"


class NotFound(AppError):
    status_code = 404
    error = "not_found"


class SlotUnavailable(AppError):
    status_code = 409
    error = "slot_unavailable"

    def __init__(self, message="Selected time slot is no longer available"):
        super().__init__(message, hint="Please choose a different time slot.")


class UpstreamFailure(AppError):
    status_code = 502
    error = "upstream_failure"
