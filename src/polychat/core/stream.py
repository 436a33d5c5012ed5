from __future__ import annotations
import asyncio
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, Union

from .errors import NetworkError


@dataclass(frozen=True)
class DeltaEvent:
    """One incremental fragment. Normally a str; other shapes are possible from odd backends."""
    fragment: Any


@dataclass(frozen=True)
class FinalEvent:
    """Terminal event carrying the backend's authoritative answer."""
    content: Any


StreamEvent = Union[DeltaEvent, FinalEvent]


async def _single(content: Any) -> AsyncIterator[StreamEvent]:
    yield FinalEvent(content)


class StreamHandle:
    """
    Finite, non-restartable async iterator of stream events.
    - stops after the first FinalEvent
    - once closed (close()/aclose()), yields nothing more and releases its source
    - a source that ends or fails also releases it
    - timeout: max seconds to wait for the next event, then NetworkError
    - on_release: optional coroutine function run once with the release,
      e.g. to close the client that opened the stream
    """

    def __init__(self, events: AsyncIterator[StreamEvent], *, timeout: Optional[float] = None,
                 on_release: Optional[Callable[[], Awaitable[Any]]] = None):
        self._events = events
        self.timeout = timeout
        self._on_release = on_release
        self._closed = False
        self._finished = False
        self._running = False
        self._released = False
        self._started = False

    @classmethod
    def final(cls, content: Any) -> "StreamHandle":
        return cls(_single(content))

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def finished(self) -> bool:
        return self._finished

    @property
    def released(self) -> bool:
        return self._released

    def __aiter__(self) -> "StreamHandle":
        if self._started:
            raise RuntimeError("StreamHandle cannot be restarted")
        self._started = True
        return self

    async def __anext__(self) -> StreamEvent:
        if self._closed or self._finished:
            await self._release()
            raise StopAsyncIteration
        self._running = True
        try:
            nxt = self._events.__anext__()
            if self.timeout is not None:
                event = await asyncio.wait_for(nxt, self.timeout)
            else:
                event = await nxt
        except StopAsyncIteration:
            self._finished = True
            await self._release()
            raise
        except asyncio.TimeoutError:
            self._finished = True
            await self._release()
            raise NetworkError(f"No response event within {self.timeout:g}s")
        except Exception:
            self._finished = True
            await self._release()
            raise
        finally:
            self._running = False

        if self._closed:
            # closed by someone else while we were waiting
            await self._release()
            raise StopAsyncIteration
        if isinstance(event, FinalEvent):
            self._finished = True
            await self._release()
        return event

    def close(self) -> None:
        """Mark closed; the source is released on the next step or by aclose()."""
        self._closed = True

    async def aclose(self) -> None:
        self._closed = True
        if not self._running:
            await self._release()

    async def _release(self) -> None:
        if self._released:
            return
        self._released = True
        try:
            aclose = getattr(self._events, "aclose", None)
            if aclose is not None:
                await aclose()
        finally:
            if self._on_release is not None:
                await self._on_release()
