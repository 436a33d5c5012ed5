from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import AsyncIterator, Callable, List, Optional, Sequence, Union

from .accumulator import StreamAccumulator
from .errors import ChatError, ValidationError
from .models import Message, Result
from .ports import Provider, ResultSink
from .resolver import ResolvedContext
from .stream import StreamHandle

logger = logging.getLogger(__name__)

CANCELLED = "[cancelled]"


@dataclass(frozen=True)
class Snapshot:
    iteration: int
    text: str


def _failure_text(exc: BaseException) -> str:
    return f"Error: {exc}" if str(exc) else f"Error: {type(exc).__name__}"


class IterationController:
    """
    Runs the same request `iterations` times, one after another, and reports
    one Result per iteration in order. A failing iteration becomes an error
    Result; it never stops the next one. cancel() closes the in-flight handle
    and marks every iteration not yet started as cancelled.
    """

    def __init__(self, provider: Provider,
                 accumulator_factory: Callable[[], StreamAccumulator] = StreamAccumulator):
        self.provider = provider
        self.accumulator_factory = accumulator_factory
        self._handle: Optional[StreamHandle] = None
        self._cancelled = False
        # rows of the current or last run, filled as they arrive
        self.results: List[Result] = []

    def cancel(self) -> None:
        self._cancelled = True
        if self._handle is not None:
            self._handle.close()

    async def events(self, messages: Sequence[Message], ctx: ResolvedContext, iterations: int
                     ) -> AsyncIterator[Union[Snapshot, Result]]:
        if isinstance(iterations, bool) or not isinstance(iterations, int) or iterations < 1:
            raise ValidationError(f"iterations must be an integer >= 1 (got {iterations!r})")
        self._cancelled = False
        history = list(messages)

        for k in range(1, iterations + 1):
            if self._cancelled:
                yield Result(k, CANCELLED, error=True)
                continue

            acc = self.accumulator_factory()
            try:
                self._handle = await self.provider.dispatch(history, ctx)
                if self._cancelled:
                    self._handle.close()
                async for text in acc.consume(self._handle):
                    yield Snapshot(k, text)
            except ChatError as e:
                logger.warning("Iteration %d failed: %s", k, e)
                yield Result(k, _failure_text(e), error=True)
                continue
            except Exception as e:
                logger.exception("Iteration %d failed unexpectedly", k)
                yield Result(k, _failure_text(e), error=True)
                continue
            finally:
                handle, self._handle = self._handle, None
                if handle is not None:
                    await handle.aclose()

            if acc.cancelled or (self._cancelled and not acc.complete):
                self._cancelled = True
                partial = f"{acc.text} {CANCELLED}" if acc.text else CANCELLED
                yield Result(k, partial, error=True)
            else:
                yield Result(k, acc.text)

    async def run(self, messages: Sequence[Message], ctx: ResolvedContext, iterations: int,
                  sink: Optional[ResultSink] = None) -> List[Result]:
        results: List[Result] = []
        self.results = results
        async for item in self.events(messages, ctx, iterations):
            if isinstance(item, Snapshot):
                if sink is not None:
                    sink.on_snapshot(item.iteration, item.text)
                continue
            results.append(item)
            if sink is not None:
                sink.on_result(item)
        return results
