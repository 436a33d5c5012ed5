from __future__ import annotations
import asyncio
import copy
import logging
from typing import Any, Dict, List, Optional

from .iterations import CANCELLED, IterationController
from .models import Credentials, GenerationSettings, Message, Result, TextBlock
from .normalizer import RawImage, normalize
from .ports import KeyStore, Provider, ResultSink
from .resolver import ResolvedContext, resolve
from .errors import ValidationError
from polychat.secrets.sources import mask_credentials

logger = logging.getLogger(__name__)


class ChatSession:
    """
    One conversation: owns the transcript, the current settings and the
    credentials. Settings and credentials reach the provider only through
    the ResolvedContext built for each turn.
    """

    def __init__(
        self,
        provider: Provider,
        transcript,
        *,
        settings: Optional[GenerationSettings] = None,
        key_store: Optional[KeyStore] = None,
        credentials: Optional[Credentials] = None,
        require_system_prompt: bool = False,
        policy=None,
    ):
        self.provider = provider
        self.transcript = transcript
        self.key_store = key_store
        self.require_system_prompt = require_system_prompt
        self.policy = policy
        self._settings = settings or GenerationSettings()
        if credentials is not None:
            self._credentials: Credentials = copy.deepcopy(credentials)
        else:
            self._credentials = key_store.get() if key_store is not None else {}
        self._controller = IterationController(provider)

    @property
    def settings(self) -> GenerationSettings:
        return self._settings

    @property
    def provider_name(self) -> str:
        return getattr(self.provider, "name", "unknown")

    # ----- settings -----

    def _check(self, settings: GenerationSettings) -> GenerationSettings:
        problems = settings.problems(getattr(self.provider, "max_tokens_cap", None))
        if problems:
            raise ValidationError("Invalid generation settings", problems)
        return settings

    def update_settings(self, **changes: Any) -> GenerationSettings:
        self._settings = self._check(self._settings.replace(**changes))
        return self._settings

    def replace_settings(self, settings: GenerationSettings) -> GenerationSettings:
        self._settings = self._check(settings)
        return self._settings

    # ----- credentials -----

    def save_credentials(self, provider: str, **fields: str) -> None:
        if self.key_store is not None:
            # only the changed fields go to the store
            self.key_store.set({provider: dict(fields)})
            self._credentials = self.key_store.get()
            return
        merged = copy.deepcopy(self._credentials)
        merged.setdefault(provider, {}).update(fields)
        self._credentials = merged

    def reload_credentials(self) -> None:
        if self.key_store is not None:
            self._credentials = self.key_store.get()

    def masked_credentials(self) -> Dict[str, Dict[str, str]]:
        return mask_credentials(self._credentials)

    # ----- turns -----

    def resolve(self) -> ResolvedContext:
        return resolve(
            self.provider_name,
            self._credentials,
            self._settings,
            model=self.provider.model,
            required=tuple(getattr(self.provider, "required_credentials", ("api_key",))),
            max_tokens_cap=getattr(self.provider, "max_tokens_cap", None),
            require_system_prompt=self.require_system_prompt,
            policy=self.policy,
        )

    async def run_turn(self, text: str, image: Optional[RawImage] = None,
                       sink: Optional[ResultSink] = None) -> List[Result]:
        message = normalize(text, image)
        # fatal configuration errors surface here, before any request
        ctx = self.resolve()
        self.transcript.append_message(message)
        iterations = self._settings.iterations
        try:
            results = await self._controller.run(self.transcript.messages, ctx, iterations, sink=sink)
        except asyncio.CancelledError:
            # cancelled from outside (e.g. Ctrl+C): still leave one row per iteration
            done = list(self._controller.results)
            done += [Result(k, CANCELLED, error=True) for k in range(len(done) + 1, iterations + 1)]
            self.transcript.record_results(done)
            logger.info("Turn cancelled after %d of %d iteration(s)", len(self._controller.results), iterations)
            raise
        self.transcript.record_results(results)
        reply = next((r for r in results if not r.error), None)
        if reply is not None:
            self.transcript.append_message(Message(role="assistant", content=(TextBlock(reply.response),)))
        logger.info("Turn finished: %d iteration(s), %d failed",
                    len(results), sum(1 for r in results if r.error))
        return results

    def cancel(self) -> None:
        self._controller.cancel()
