from __future__ import annotations
from typing import Iterable, Optional, Sequence


class ChatError(Exception):
    """Base class for failures surfaced by the chat core."""

    retryable = False


class MissingCredentialError(ChatError):
    """
    A credential the selected provider needs is absent or blank.
    Raised before any request is sent.
    """

    def __init__(self, provider: str, fields: Iterable[str]):
        self.provider = provider
        self.fields = tuple(fields)
        super().__init__(f"Missing credential(s) for '{provider}': {', '.join(self.fields)}")


class ValidationError(ChatError):
    """Settings or input outside their contract. Raised before any request is sent."""

    def __init__(self, message: str, problems: Optional[Sequence[str]] = None):
        self.problems = list(problems or [])
        if self.problems:
            message = message + ": " + "; ".join(self.problems)
        super().__init__(message)


class NetworkError(ChatError):
    """
    Transport failure or timeout. Reported per iteration; safe to retry
    before a stream has been handed out.
    """

    retryable = True


class ProviderError(ChatError):
    """The backend answered with a structured failure (status + message)."""

    def __init__(self, message: str, status: Optional[int] = None):
        self.status = status
        self.message = message
        super().__init__(f"[{status}] {message}" if status is not None else message)

    @property
    def retryable(self) -> bool:  # type: ignore[override]
        return self.status is not None and (self.status == 429 or 500 <= self.status <= 599)


class UnsupportedContentError(ChatError):
    """A content block the target backend cannot carry. Adapters degrade it to a placeholder."""

    def __init__(self, block_type: str):
        self.block_type = block_type
        super().__init__(f"Content block of type '{block_type}' is not supported here")
