class ServiceError(Exception):
    """Base class for failures that are reported to the client as JSON."""

    status_code = 400
    default_message = "Request failed"

    def __init__(self, message=None, **extra):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message
        self.extra = extra

    def to_dict(self) -> dict:
        body = {"error": self.message}
        body.update(self.extra)
        return body


class ValidationError(ServiceError):
    status_code = 400
    default_message = "Invalid request"


class NotFound(ServiceError):
    status_code = 404
    default_message = "Not found"


class Forbidden(ServiceError):
    status_code = 403
    default_message = "Forbidden"


class Expired(ServiceError):
    status_code = 400
    default_message = "Code has expired. Please request a new one."


class InvalidCode(ServiceError):
    status_code = 400
    default_message = "Invalid code"


class AttemptsExceeded(ServiceError):
    status_code = 429
    default_message = "Too many failed attempts. Please request a new code."


class RateLimited(ServiceError):
    status_code = 429
    default_message = "Too many requests. Slow down."


class SignatureInvalid(ServiceError):
    status_code = 400
    default_message = "Payment verification failed"


class UpstreamUnavailable(ServiceError):
    status_code = 503
    default_message = "Service temporarily unavailable"
