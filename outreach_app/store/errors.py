"""Error taxonomy for record store access."""

from __future__ import annotations


class StoreError(RuntimeError):
    """Base error for record store failures."""


class TransientStoreError(StoreError):
    """Timeout, 429 or 5xx; retried inside the client and never raised past it."""

    def __init__(self, message: str, *, status_code: int | None = None, retry_after: float | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.retry_after = retry_after


class TerminalStoreError(StoreError):
    """Retries exhausted for a store operation."""

    def __init__(self, operation: str, *, attempts: int, last_error: BaseException | None):
        super().__init__(f"{operation} failed after {attempts} attempt(s): {last_error}")
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error


class StoreRequestError(StoreError):
    """Non-retryable 4xx response (bad formula, unknown field, validation failure)."""

    def __init__(self, operation: str, *, status_code: int, body: str = ""):
        super().__init__(f"{operation} rejected with HTTP {status_code}: {body[:500]}")
        self.operation = operation
        self.status_code = status_code
        self.body = body


class RecordNotFound(StoreRequestError):
    """HTTP 404 for a record or table."""
