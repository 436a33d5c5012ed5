# src/polychat/providers/completion_adapter.py
from __future__ import annotations
import logging
from typing import Any, Dict, List, Sequence

from polychat.core.errors import ProviderError, UnsupportedContentError
from polychat.core.models import Message
from polychat.core.resolver import ResolvedContext
from polychat.core.stream import StreamHandle
from polychat.providers.openai_adapter import OpenAICompatibleAdapter
from polychat.providers.registry import ProviderRegistry

logger = logging.getLogger(__name__)

HUMAN = "\n\nHuman:"
ASSISTANT = "\n\nAssistant:"
NO_RESPONSE = "No response."
_PLACEHOLDERS = {"image": "[Image]"}


def flatten_text(message: Message) -> str:
    """Text of a message for a text-only backend; non-text blocks become placeholders."""
    parts: List[str] = []
    for block in message.content:
        try:
            parts.append(block.as_text())
        except UnsupportedContentError as e:
            marker = _PLACEHOLDERS.get(e.block_type, f"[{e.block_type}]")
            logger.warning("%s; sending %s instead", e, marker)
            parts.append(marker)
    return "\n".join(parts)


def build_prompt(messages: Sequence[Message], system_prompt: str = "") -> str:
    """
    Human/Assistant transcript prompt:

        <system prompt>

        Human: ...

        Assistant:
    """
    prompt = system_prompt.strip()
    for m in messages:
        tag = HUMAN if m.role == "user" else ASSISTANT
        prompt += f"{tag} {flatten_text(m)}"
    return prompt + ASSISTANT


@ProviderRegistry.register("completion")
class TextCompletionAdapter(OpenAICompatibleAdapter):
    """
    Text-only completion model, single-shot: one request, one FinalEvent,
    no deltas.
    """

    multimodal = False

    def _build_args(self, messages: Sequence[Message], ctx: ResolvedContext) -> Dict[str, Any]:
        params = dict(ctx.params)
        stop = [HUMAN] + [s for s in params.pop("stop", []) if s != HUMAN]
        return {
            "model": ctx.model,
            "prompt": build_prompt(messages, ctx.settings.system_prompt),
            "stop": stop,
            **params,
        }

    async def dispatch(self, messages: Sequence[Message], ctx: ResolvedContext) -> StreamHandle:
        async with self._client(ctx) as client:
            resp = await self._request(client.completions.create(**self._build_args(messages, ctx)))
        try:
            text = resp.choices[0].text
        except (AttributeError, IndexError) as e:
            raise ProviderError("Malformed completion response") from e
        text = text.strip() if isinstance(text, str) else ""
        return StreamHandle.final(text or NO_RESPONSE)
