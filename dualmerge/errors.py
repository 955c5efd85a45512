from typing import Optional


REGION_UNAVAILABLE = "RegionUnavailable"
RATE_LIMITED = "RateLimited"
TRANSPORT = "Transport"
EMPTY_RESPONSE = "EmptyResponse"
UNKNOWN = "Unknown"

PROVIDER_ERROR_KINDS = {REGION_UNAVAILABLE, RATE_LIMITED, TRANSPORT, EMPTY_RESPONSE, UNKNOWN}


class InvalidRequest(ValueError):
    """Caller error; the only failure surfaced as a non-200 response."""


class ProviderError(Exception):
    def __init__(
        self,
        kind: str,
        message: str,
        provider_id: str = "",
        status_code: Optional[int] = None,
    ):
        if kind not in PROVIDER_ERROR_KINDS:
            kind = UNKNOWN
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.provider_id = provider_id
        self.status_code = status_code

    def __str__(self) -> str:
        return f"{self.kind}: {self.message}"


class OperationTimeout(Exception):
    def __init__(self, duration_ms: int):
        super().__init__(f"Request timed out after {duration_ms}ms")
        self.duration_ms = duration_ms


class MergeFailure(Exception):
    """Synthesis call failed or timed out; callers fall back to concatenation."""

    def __init__(self, message: str, error: Optional[Exception] = None):
        super().__init__(message)
        self.error = error
