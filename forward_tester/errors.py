"""
Error classes for the forward-testing engine.

Every error raised past a pipeline stage boundary derives from
ForwardTestingError so the scheduler can record it without caring where it
came from.
"""


class ForwardTestingError(Exception):
    """Base error for engine operations."""

    def to_dict(self) -> dict:
        return {"error_type": type(self).__name__, "error_message": str(self)}


class DataFetchError(ForwardTestingError):
    """Market data was unavailable or malformed."""
    pass


class StrategyRuntimeError(ForwardTestingError):
    """User strategy failed or produced an unusable result."""
    pass


class StrategySandboxTimeout(StrategyRuntimeError):
    """User strategy exceeded its execution budget."""
    pass


class BrokerError(ForwardTestingError):
    """Base for brokerage I/O failures."""

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status

    def to_dict(self) -> dict:
        detail = super().to_dict()
        detail["status"] = self.status
        return detail


class AuthError(BrokerError):
    """Credentials were rejected. Terminal for the tick."""
    pass


class RateLimited(BrokerError):
    """Venue throttled the request. Retryable."""

    def __init__(self, message: str, status: int | None = 429, retry_after: float | None = None):
        super().__init__(message, status=status)
        self.retry_after = retry_after


class OrderRejected(BrokerError):
    """Venue refused the order. Terminal for the tick."""

    def __init__(self, message: str, status: int | None = None, reason: str | None = None):
        super().__init__(message, status=status)
        self.reason = reason

    def to_dict(self) -> dict:
        detail = super().to_dict()
        detail["reason"] = self.reason
        return detail


class NetworkError(BrokerError):
    """Transport failure, timeout, or 5xx. Retryable."""
    pass


class ConnectionFailedError(ForwardTestingError):
    """Connection supervisor gave up; blocks sessions on that credential."""
    pass
