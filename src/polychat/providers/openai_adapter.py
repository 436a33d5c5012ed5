# src/polychat/providers/openai_adapter.py
from __future__ import annotations
import asyncio
import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

from openai import AsyncOpenAI

from polychat.core.errors import ChatError, NetworkError, ProviderError
from polychat.core.models import ImageBlock, Message
from polychat.core.resolver import ResolvedContext
from polychat.core.stream import DeltaEvent, FinalEvent, StreamEvent, StreamHandle
from polychat.providers.registry import ProviderRegistry

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 60.0


def _classify_openai_exception(exc: BaseException) -> ChatError:
    """
    Convert OpenAI/client exceptions into the shared error taxonomy.
    Avoid hard dependency on specific SDK exception classes by inspecting attributes/message.
    """
    if isinstance(exc, ChatError):
        return exc
    status = getattr(exc, "status_code", None) or getattr(exc, "http_status", None)
    msg = getattr(exc, "message", None) or str(exc) or type(exc).__name__

    if status is not None:
        return ProviderError(str(msg), int(status))

    if isinstance(exc, (TimeoutError, asyncio.TimeoutError, ConnectionError)):
        return NetworkError(str(msg) if str(exc) else "Request timed out")
    kind = type(exc).__name__.lower()
    lower = str(msg).lower()
    if any(k in kind for k in ("timeout", "connection")) or any(
            k in lower for k in ("timed out", "timeout", "connection")):
        return NetworkError(str(msg))
    return ProviderError(str(msg))


class OpenAICompatibleAdapter:
    """
    Shared plumbing for adapters that speak the OpenAI HTTP API:
    one AsyncOpenAI client per dispatch, built from ctx.credentials.
    """

    name = "openai"
    required_credentials = ("api_key",)
    multimodal = False
    DEFAULT_MAX_TOKENS_CAP = 4096

    def __init__(
        self,
        model: str,
        *,
        timeout: Optional[float] = DEFAULT_TIMEOUT,
        base_url: Optional[str] = None,
        organization: Optional[str] = None,
        max_tokens_cap: Optional[int] = None,
    ):
        self.model = model
        self.timeout = timeout
        self.base_url = base_url
        self.organization = organization
        self.max_tokens_cap = max_tokens_cap or self.DEFAULT_MAX_TOKENS_CAP

    @classmethod
    def create(cls, *, model_name: str, provider_cfg: Dict[str, Any]) -> "OpenAICompatibleAdapter":
        cfg = provider_cfg or {}
        timeout = cfg.get("timeout", DEFAULT_TIMEOUT)
        return cls(
            model=model_name,
            timeout=float(timeout) if timeout is not None else None,
            base_url=cfg.get("base_url"),
            organization=cfg.get("organization"),
            max_tokens_cap=cfg.get("max_tokens_cap"),
        )

    def _client(self, ctx: ResolvedContext) -> AsyncOpenAI:
        kwargs: Dict[str, Any] = {"api_key": ctx.credentials["api_key"]}
        if self.base_url:
            kwargs["base_url"] = self.base_url
        if self.organization:
            kwargs["organization"] = self.organization
        if self.timeout is not None:
            kwargs["timeout"] = self.timeout
        return AsyncOpenAI(**kwargs)

    async def _request(self, call) -> Any:
        try:
            if self.timeout is not None:
                return await asyncio.wait_for(call, self.timeout)
            return await call
        except Exception as e:
            raise _classify_openai_exception(e) from e


@ProviderRegistry.register("vision")
class OpenAIVisionAdapter(OpenAICompatibleAdapter):
    """
    Multimodal chat model, streamed:
    - system prompt goes first as a {"role": "system"} message
    - image blocks are sent inline as base64 data URLs
    - every non-empty delta becomes a DeltaEvent, then one FinalEvent with the joined text
    """

    multimodal = True

    def to_wire(self, messages: Sequence[Message], ctx: ResolvedContext) -> List[Dict[str, Any]]:
        wire: List[Dict[str, Any]] = []
        if ctx.settings.system_prompt.strip():
            wire.append({"role": "system", "content": ctx.settings.system_prompt})
        for m in messages:
            parts: List[Dict[str, Any]] = []
            for block in m.content:
                if isinstance(block, ImageBlock):
                    parts.append({"type": "image_url", "image_url": {"url": block.data_url()}})
                else:
                    parts.append({"type": "text", "text": block.as_text()})
            wire.append({"role": m.role, "content": parts})
        return wire

    def _build_args(self, messages: Sequence[Message], ctx: ResolvedContext) -> Dict[str, Any]:
        return {
            "model": ctx.model,
            "messages": self.to_wire(messages, ctx),
            "stream": True,
            **ctx.params,  # already filtered by the param policy
        }

    async def dispatch(self, messages: Sequence[Message], ctx: ResolvedContext) -> StreamHandle:
        client = self._client(ctx)
        try:
            stream = await self._request(client.chat.completions.create(**self._build_args(messages, ctx)))
        except BaseException:
            await client.close()
            raise
        logger.debug("Opened stream to %s", ctx.model)

        async def release() -> None:
            # the stream's connection first, then the client's pool
            try:
                close = getattr(stream, "close", None)
                if close is not None:
                    await close()
            finally:
                await client.close()

        return StreamHandle(self._events(stream), timeout=self.timeout, on_release=release)

    async def _events(self, stream) -> AsyncIterator[StreamEvent]:
        parts: List[str] = []
        try:
            async for chunk in stream:
                try:
                    piece = chunk.choices[0].delta.content
                except (AttributeError, IndexError):
                    piece = None
                if piece:
                    parts.append(piece)
                    yield DeltaEvent(piece)
        except Exception as e:
            raise _classify_openai_exception(e) from e
        yield FinalEvent("".join(parts))
