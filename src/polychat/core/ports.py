from __future__ import annotations
from typing import TYPE_CHECKING, Optional, Protocol, Sequence, Tuple

from .models import Credentials, Message, Result

if TYPE_CHECKING:
    from .resolver import ResolvedContext
    from .stream import StreamHandle


class Provider(Protocol):
    """
    Interface the core uses to talk to any LLM backend.
    """

    name: str
    model: str
    # credential fields resolve() must find for this provider
    required_credentials: Tuple[str, ...]
    max_tokens_cap: Optional[int]
    multimodal: bool

    async def dispatch(self, messages: Sequence[Message], ctx: "ResolvedContext") -> "StreamHandle":
        """
        Send the conversation and return its event stream.
        Streaming backends yield DeltaEvents then one FinalEvent;
        single-shot backends yield only the FinalEvent.
        """
        ...


class KeyStore(Protocol):
    def get(self) -> Credentials: ...

    # merges: only the given provider fields change, an empty value removes one
    def set(self, credentials: Credentials) -> None: ...


class ResultSink(Protocol):
    def on_snapshot(self, iteration: int, text: str) -> None: ...

    def on_result(self, result: Result) -> None: ...
