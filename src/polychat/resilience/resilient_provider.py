from __future__ import annotations
import asyncio
import logging
import random
import time
from typing import Sequence

from polychat.core.errors import ChatError
from polychat.core.models import Message
from polychat.core.resolver import ResolvedContext
from polychat.core.stream import StreamHandle

logger = logging.getLogger(__name__)


class ResiliencePolicy:
    def __init__(self, max_retries=2, base_delay=0.5, max_delay=8.0, total_timeout=30.0):
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.total_timeout = total_timeout

    def compute_backoff(self, attempt: int) -> float:
        return min(self.max_delay, self.base_delay * (2 ** (attempt - 1)) + random.random() * 0.1)


class ResilientProvider:
    """
    Retries opening a request (dispatch) on retryable errors: NetworkError and
    ProviderError with 429/5xx. A StreamHandle that has been handed out is
    never retried; errors inside the stream belong to that iteration.
    """

    def __init__(self, inner, policy: ResiliencePolicy):
        self.inner = inner
        self.policy = policy

    def __getattr__(self, item):
        # name, model, required_credentials, max_tokens_cap, multimodal ...
        if item == "inner":
            raise AttributeError(item)
        return getattr(self.inner, item)

    def _should_retry(self, exc: Exception) -> bool:
        return isinstance(exc, ChatError) and bool(exc.retryable)

    async def dispatch(self, messages: Sequence[Message], ctx: ResolvedContext) -> StreamHandle:
        start = time.monotonic()
        attempt = 0
        while True:
            attempt += 1
            try:
                return await self.inner.dispatch(messages, ctx)
            except Exception as e:
                if (not self._should_retry(e) or attempt > self.policy.max_retries
                        or (time.monotonic() - start) > self.policy.total_timeout):
                    raise
                delay = self.policy.compute_backoff(attempt)
                logger.info("Dispatch to %s failed (%s); retry %d in %.2fs",
                            ctx.provider, e, attempt, delay)
                await asyncio.sleep(delay)
