from __future__ import annotations


class DiscoveryError(Exception):
    status_code = 500
    code = "discovery_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(DiscoveryError):
    status_code = 422
    code = "validation_error"


class Unauthorized(DiscoveryError):
    status_code = 401
    code = "unauthorized"


class NotFound(DiscoveryError):
    status_code = 404
    code = "not_found"


class RateLimited(DiscoveryError):
    status_code = 429
    code = "rate_limited"

    def __init__(self, message: str, retry_after_seconds: float) -> None:
        super().__init__(message)
        self.retry_after_seconds = retry_after_seconds


class PersistenceError(DiscoveryError):
    status_code = 500
    code = "persistence_error"


class DiscoveryUnavailable(DiscoveryError):
    """Every provider failed and no cached or stored data covers the viewport."""

    status_code = 503
    code = "discovery_unavailable"
