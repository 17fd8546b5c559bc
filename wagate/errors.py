"""Error taxonomy shared by the supervisor, registry, relay and HTTP layer."""

from typing import Any


class GatewayError(Exception):
    """Base class for errors surfaced to HTTP callers as a JSON envelope."""

    status_code: int = 500
    kind: str = "error"

    def __init__(self, message: str, details: Any = None):
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationError(GatewayError):
    """Malformed request. Client-fixable, never retried."""

    status_code = 400
    kind = "validation_error"


class Unauthorized(GatewayError):
    status_code = 401
    kind = "unauthorized"


class NotFound(GatewayError):
    """Unknown session, message or chat."""

    status_code = 404
    kind = "not_found"


class Conflict(GatewayError):
    status_code = 409
    kind = "conflict"


class CapacityExceeded(GatewayError):
    status_code = 429
    kind = "capacity_exceeded"


class OperationFailed(GatewayError):
    """The backend raised while executing a command."""

    status_code = 500
    kind = "operation_failed"


class NotReady(GatewayError):
    """Backend is not in the Ready state. Retryable after backoff."""

    status_code = 503
    kind = "not_ready"


class TimedOut(GatewayError):
    """A guarded call exceeded its budget. The outcome is unknown."""

    status_code = 504
    kind = "gateway_timeout"

    def __init__(self, operation: str, budget: float):
        super().__init__(f"{operation} timed out after {budget:g}s")
        self.operation = operation
        self.budget = budget


class BackendFault(Exception):
    """Backend threw or disconnected.

    Absorbed by the supervisor and turned into a restart; never surfaced to
    an HTTP caller.
    """

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason
