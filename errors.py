from typing import Optional


class TransportError(Exception):
    """The realtime backend is unreachable or rejected an operation."""


class AuthError(TransportError):
    """Realtime token missing, invalid, expired, or lacking a capability."""


class ChannelNotAttachedError(TransportError):
    pass


class MalformedPayloadError(ValueError):
    """An event or presence payload failed validation."""


class GatewayError(Exception):
    """A persistence gateway call was rejected."""

    code = "gateway_error"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code


class NotFoundError(GatewayError):
    code = "not_found"


class ConflictError(GatewayError):
    """Duplicate write or stale transition; the caller lost a race."""

    code = "conflict"
