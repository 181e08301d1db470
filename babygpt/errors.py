from __future__ import annotations

from typing import Optional


class BabyGPTError(Exception):
    """Base class for errors raised inside the conversation core."""


class QuotaExceeded(BabyGPTError):
    """The completion service reported quota or billing exhaustion."""


class MalformedServiceOutput(BabyGPTError):
    """A structured completion response did not match the expected schema."""

    def __init__(self, message: str, raw: str = "") -> None:
        super().__init__(message)
        self.raw = raw


class TransientChannelError(BabyGPTError):
    """Retryable outbound failure (HTTP 429, 5xx or a transport error)."""

    def __init__(self, message: str, status: Optional[int] = None, retry_after: Optional[float] = None) -> None:
        super().__init__(message)
        self.status = status
        self.retry_after = retry_after


class PermanentChannelError(BabyGPTError):
    """Non-retryable outbound failure; the turn is dropped after logging."""

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status
