"""
Exception types raised by job handlers.

Every exception the runner inspects carries a ``recoverable`` flag: a
recoverable failure is retried through backoff, anything else moves the
job straight to its terminal error state.
"""


class JobEngineError(Exception):
    """Base class for job engine failures."""

    def __init__(self, message: str, recoverable: bool = True):
        super().__init__(message)
        self.recoverable = recoverable


class PermanentJobError(JobEngineError):
    """Retrying cannot succeed (bad input, missing prerequisite)."""

    def __init__(self, message: str):
        super().__init__(message, recoverable=False)


class UnknownJobKindError(PermanentJobError):
    def __init__(self, kind: str):
        super().__init__(f"Unknown job kind '{kind}'")
        self.kind = kind


class PayloadValidationError(PermanentJobError):
    """Payload does not match the schema declared for its kind."""

    def __init__(self, kind: str, message: str, errors: list | None = None):
        super().__init__(f"Invalid payload for '{kind}': {message}")
        self.kind = kind
        self.errors = errors or []


class RateLimitExceeded(JobEngineError):
    """Per-user quota for a costed operation is used up for the current window."""

    def __init__(self, user_id: str, operation: str, limit: int, retry_after: float = 60.0):
        super().__init__(
            f"Rate limit exceeded for {operation} ({limit}/minute)", recoverable=True
        )
        self.user_id = user_id
        self.operation = operation
        self.limit = limit
        self.retry_after = retry_after


class ProviderError(JobEngineError):
    """Provider API failure. Timeouts, expired auth, 429 and 5xx are recoverable."""

    RECOVERABLE_STATUS_CODES = {401, 408, 429, 500, 502, 503, 504}

    def __init__(
        self,
        message: str,
        provider: str,
        status_code: int | None = None,
        error_code: str | None = None,
        response_data: dict | None = None,
    ):
        recoverable = status_code is None or status_code in self.RECOVERABLE_STATUS_CODES
        super().__init__(message, recoverable=recoverable)
        self.provider = provider
        self.status_code = status_code
        self.error_code = error_code
        self.response_data = response_data or {}
