"""Exception hierarchy for the research harness.

Every harness-specific exception inherits from ResearchError so callers can
catch the whole family at a unit-of-work boundary.
"""

from typing import Optional


class ResearchError(Exception):
    """Base exception for all harness errors."""

    def __init__(self, message: str = "", *, retryable: bool = False) -> None:
        super().__init__(message)
        self.retryable = retryable


class ApiError(ResearchError):
    """Failure talking to the code-hosting API."""

    # Status codes that signal rate limiting or a server-side hiccup
    RETRYABLE_STATUS = (403, 429, 500, 502, 503, 504)

    def __init__(
        self,
        message: str = "",
        *,
        status_code: Optional[int] = None,
        retryable: Optional[bool] = None,
    ) -> None:
        if retryable is None:
            retryable = status_code is None or status_code in self.RETRYABLE_STATUS
        super().__init__(message, retryable=retryable)
        self.status_code = status_code


class TruncatedTreeError(ApiError):
    """Recursive tree listing was truncated by the API."""

    def __init__(self, message: str = "") -> None:
        super().__init__(message, retryable=False)


class LedgerError(ResearchError):
    """Ledger file exists but cannot be read back."""


class ConfigPatchError(ResearchError):
    """Build-config file could not be backed up, patched or restored."""

    def __init__(self, message: str = "", *, path=None) -> None:
        super().__init__(message)
        self.path = path
