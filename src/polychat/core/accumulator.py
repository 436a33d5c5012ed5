from __future__ import annotations
import logging
from typing import Any, AsyncIterator, List, Mapping, Optional

from .errors import NetworkError
from .stream import DeltaEvent, FinalEvent, StreamHandle

logger = logging.getLogger(__name__)

NON_TEXT_SENTINEL = "[Non-text response]"


def _fragment_text(fragment: Any) -> Optional[str]:
    if isinstance(fragment, str):
        return fragment
    if isinstance(fragment, Mapping) and isinstance(fragment.get("text"), str):
        return fragment["text"]
    return None


def _final_text(content: Any) -> Optional[str]:
    if isinstance(content, str):
        return content
    if isinstance(content, Mapping):
        if content.get("type", "text") == "text" and isinstance(content.get("text"), str):
            return content["text"]
        return None
    if isinstance(content, (list, tuple)) and content:
        parts = [_final_text(c) for c in content]
        if all(p is not None for p in parts):
            return "".join(parts)  # type: ignore[arg-type]
    return None


class StreamAccumulator:
    """
    Builds the growing response text from a StreamHandle.
    consume() yields full snapshots (not diffs); the last one is the
    backend's final text. One accumulator per handle.
    """

    def __init__(self) -> None:
        self.text = ""
        self.complete = False
        self.cancelled = False
        self.warnings: List[str] = []

    async def consume(self, handle: StreamHandle) -> AsyncIterator[str]:
        parts: List[str] = []
        async for event in handle:
            if isinstance(event, FinalEvent):
                final = _final_text(event.content)
                if final is None:
                    self._warn(f"Final payload is not text ({type(event.content).__name__}); using sentinel")
                    final = NON_TEXT_SENTINEL
                self.text = final
                self.complete = True
                yield final
                return

            if not isinstance(event, DeltaEvent):
                self._warn(f"Skipping unknown stream event {type(event).__name__}")
                continue
            piece = _fragment_text(event.fragment)
            if piece is None:
                self._warn(f"Skipping delta with unrecognized shape {type(event.fragment).__name__}")
                continue
            parts.append(piece)
            self.text = "".join(parts)
            yield self.text

        if handle.closed:
            self.cancelled = True
            return
        raise NetworkError("Stream ended before the final message")

    def _warn(self, msg: str) -> None:
        self.warnings.append(msg)
        logger.warning(msg)
