"""
AI Service Exceptions

This module contains exception classes for the AI service.
Separated to avoid circular imports between service.py and providers.py.
"""

from enum import Enum
from typing import Optional


class ProviderErrorKind(str, Enum):
    RATE_LIMITED = "rate_limited"
    TIMEOUT = "timeout"
    SERVER_ERROR = "server_error"
    AUTH = "auth"
    INVALID_INPUT = "invalid_input"
    CONTENT_POLICY = "content_policy"
    UNKNOWN = "unknown"


TRANSIENT_KINDS = frozenset({
    ProviderErrorKind.RATE_LIMITED,
    ProviderErrorKind.TIMEOUT,
    ProviderErrorKind.SERVER_ERROR,
    ProviderErrorKind.UNKNOWN,
})


class ProviderError(Exception):
    """Translation provider call failed."""

    def __init__(self, message: str, kind: ProviderErrorKind = ProviderErrorKind.UNKNOWN,
                 status_code: Optional[int] = None):
        super().__init__(message)
        self.kind = ProviderErrorKind(kind)
        self.status_code = status_code

    @property
    def is_transient(self) -> bool:
        return self.kind in TRANSIENT_KINDS

    def __str__(self):
        return f"[{self.kind.value}] {super().__str__()}"
