"""
Service layer exceptions.
"""


class ServiceError(Exception):
    """Base exception for service layer errors."""

    def __init__(self, message: str, service_id: str | None = None):
        self.service_id = service_id
        super().__init__(message)


class CacheError(ServiceError):
    """Cache misconfigured or cache operation failed."""

    pass


class PersistenceError(CacheError):
    """Durable cache store operation failed."""

    pass


class CircuitOpenError(ServiceError):
    """Circuit breaker is open, request blocked."""

    def __init__(self, service_id: str, reset_after_seconds: float | None = None):
        self.reset_after_seconds = reset_after_seconds
        msg = f"Circuit breaker open for service '{service_id}'"
        if reset_after_seconds is not None:
            msg += f", retry after {reset_after_seconds:.1f}s"
        super().__init__(msg, service_id=service_id)


class RequestTimeoutError(ServiceError):
    """Request timed out."""

    def __init__(self, service_id: str, timeout: float):
        self.timeout = timeout
        super().__init__(
            f"Request to service '{service_id}' timed out after {timeout}s",
            service_id=service_id,
        )


class HttpStatusError(ServiceError):
    """Server answered with a non-success status code."""

    def __init__(
        self,
        status: int,
        message: str,
        service_id: str | None = None,
        body: str | None = None,
    ):
        self.status = status
        self.body = body
        super().__init__(f"HTTP {status}: {message}", service_id=service_id)


class RateLimitError(HttpStatusError):
    """Rate limit exceeded."""

    def __init__(self, service_id: str, retry_after: float | None = None):
        self.retry_after = retry_after
        msg = f"Rate limit exceeded for service '{service_id}'"
        if retry_after:
            msg += f", retry after {retry_after}s"
        super().__init__(429, msg, service_id=service_id)


class ServiceUnavailableError(HttpStatusError):
    """Service is temporarily unavailable."""

    def __init__(self, service_id: str, message: str = "Service unavailable"):
        super().__init__(503, message, service_id=service_id)
