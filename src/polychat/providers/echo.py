from __future__ import annotations
import asyncio
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

from polychat.core.models import Message
from polychat.core.resolver import ResolvedContext
from polychat.core.stream import DeltaEvent, FinalEvent, StreamEvent, StreamHandle
from polychat.providers.registry import ProviderRegistry

_LOREM_50 = (
    "Lorem ipsum dolor sit amet consectetur adipiscing elit sed do eiusmod tempor "
    "incididunt ut labore et dolore magna aliqua Curabitur non nulla sit amet nisl "
    "tempor convallis quis ac lectus Phasellus viverra nulla ut metus varius laoreet "
    "Quisque rutrum Aenean imperdiet Etiam ultricies nisi vel augue Curabitur ullamcorper ultricies nisi"
).split()


@ProviderRegistry.register("echo")
class EchoAdapter:
    """
    Offline stub that streams a fixed 50-word lorem ipsum, one word per
    delta, with a small delay to simulate tokens. Accepts images and needs
    no credentials.
    """
    required_credentials: tuple = ()
    max_tokens_cap: Optional[int] = None
    multimodal = True

    def __init__(self, model: str = "echo-lorem", token_delay: float = 0.125,
                 words: Optional[List[str]] = None):
        self.model = model
        self.token_delay = float(token_delay)
        self.words = list(words) if words is not None else list(_LOREM_50)

    @classmethod
    def create(cls, *, model_name: str, provider_cfg: Dict[str, Any]) -> "EchoAdapter":
        cfg = provider_cfg or {}
        return cls(model=model_name, token_delay=cfg.get("token_delay", 0.125), words=cfg.get("words"))

    async def dispatch(self, messages: Sequence[Message], ctx: ResolvedContext) -> StreamHandle:
        return StreamHandle(self._events())

    async def _events(self) -> AsyncIterator[StreamEvent]:
        last_idx = len(self.words) - 1
        for i, w in enumerate(self.words):
            yield DeltaEvent(w + ("" if i == last_idx else " "))
            if self.token_delay > 0:
                await asyncio.sleep(self.token_delay)
        yield FinalEvent(" ".join(self.words))
