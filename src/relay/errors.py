from __future__ import annotations

from typing import Any


class RelayError(Exception):
    """Base class for dispatcher failures."""


class ConfigurationError(RelayError):
    """Raised when a profile cannot be used as configured (missing credential, unknown kind)."""


class UpstreamError(RelayError):
    """Raised when a backend answers with a non-success response or cannot be reached."""

    def __init__(
        self,
        status_code: int | None,
        message: str,
        *,
        error_type: str | None = None,
        retry_after: int | None = None,
    ) -> None:
        self.status_code = status_code
        self.message = message
        self.error_type = error_type
        self.retry_after = retry_after
        super().__init__(message)

    @property
    def is_rate_limited(self) -> bool:
        return self.status_code == 429

    def __str__(self) -> str:
        if self.status_code is None:
            return self.message
        return f"HTTP {self.status_code}: {self.message}"

    def __repr__(self) -> str:
        return (
            f"UpstreamError(status_code={self.status_code!r}, message={self.message!r}, "
            f"error_type={self.error_type!r})"
        )


class ParseError(RelayError):
    """A streamed chunk could not be decoded. Recovered by skipping the chunk."""

    def __init__(self, message: str, *, payload: Any = None) -> None:
        self.payload = payload
        super().__init__(message)


class AllProfilesExhaustedError(RelayError):
    """Every configured profile was inadmissible or failed for this request."""

    def __init__(self, last_error: BaseException | None, *, attempts: int) -> None:
        self.last_error = last_error
        self.attempts = attempts
        detail = str(last_error) if last_error is not None else "no profile admitted"
        super().__init__(
            f"all fallback profiles exhausted after {attempts} attempt(s); last error: {detail}"
        )


class RequestCancelledError(RelayError):
    """The caller cancelled the request or its deadline passed."""


__all__ = [
    "RelayError",
    "ConfigurationError",
    "UpstreamError",
    "ParseError",
    "AllProfilesExhaustedError",
    "RequestCancelledError",
]
