# src/polychat/providers/bedrock_adapter.py
from __future__ import annotations
import asyncio
import json
import logging
from typing import Any, Dict, Optional, Sequence

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError, ConnectionError as BotoConnectionError, HTTPClientError

from polychat.core.errors import ChatError, NetworkError, ProviderError
from polychat.core.models import Message
from polychat.core.resolver import ResolvedContext
from polychat.core.stream import StreamHandle
from polychat.providers.completion_adapter import HUMAN, NO_RESPONSE, build_prompt
from polychat.providers.registry import ProviderRegistry

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 60.0

# generation setting -> text-completion body field
_BODY_FIELDS = {
    "max_tokens": "max_tokens_to_sample",
    "temperature": "temperature",
    "top_p": "top_p",
}


def _classify_bedrock_exception(exc: BaseException) -> ChatError:
    if isinstance(exc, ChatError):
        return exc
    if isinstance(exc, ClientError):
        err = exc.response.get("Error", {})
        status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
        msg = err.get("Message") or err.get("Code") or str(exc)
        return ProviderError(str(msg), int(status) if status else None)
    if isinstance(exc, (BotoConnectionError, HTTPClientError, TimeoutError, asyncio.TimeoutError, ConnectionError)):
        return NetworkError(str(exc) or "Request timed out")
    if isinstance(exc, BotoCoreError):
        return ProviderError(str(exc))
    return ProviderError(str(exc) or type(exc).__name__)


@ProviderRegistry.register("bedrock")
class BedrockAdapter:
    """
    Text-completion model on AWS Bedrock via InvokeModel. Single-shot like
    the completion backend: one request, one FinalEvent, no deltas.
    """

    required_credentials = ("access_key", "secret_key", "region")
    optional_credentials = ("session_token",)
    multimodal = False
    DEFAULT_MAX_TOKENS_CAP = 4096

    def __init__(
        self,
        model: str,
        *,
        timeout: Optional[float] = DEFAULT_TIMEOUT,
        endpoint_url: Optional[str] = None,
        max_tokens_cap: Optional[int] = None,
    ):
        self.model = model
        self.timeout = timeout
        self.endpoint_url = endpoint_url
        self.max_tokens_cap = max_tokens_cap or self.DEFAULT_MAX_TOKENS_CAP

    @classmethod
    def create(cls, *, model_name: str, provider_cfg: Dict[str, Any]) -> "BedrockAdapter":
        cfg = provider_cfg or {}
        timeout = cfg.get("timeout", DEFAULT_TIMEOUT)
        return cls(
            model=model_name,
            timeout=float(timeout) if timeout is not None else None,
            endpoint_url=cfg.get("endpoint_url"),
            max_tokens_cap=cfg.get("max_tokens_cap"),
        )

    def _client(self, ctx: ResolvedContext):
        creds = ctx.credentials
        return boto3.client(
            "bedrock-runtime",
            region_name=creds["region"],
            aws_access_key_id=creds["access_key"],
            aws_secret_access_key=creds["secret_key"],
            aws_session_token=creds.get("session_token") or None,
            endpoint_url=self.endpoint_url,
            # retries belong to ResilientProvider
            config=Config(retries={"max_attempts": 1, "mode": "standard"}),
        )

    def _build_body(self, messages: Sequence[Message], ctx: ResolvedContext) -> Dict[str, Any]:
        params = dict(ctx.params)
        body: Dict[str, Any] = {"prompt": build_prompt(messages, ctx.settings.system_prompt)}
        for name, field in _BODY_FIELDS.items():
            if name in params:
                body[field] = params.pop(name)
        body["stop_sequences"] = [HUMAN] + [s for s in params.pop("stop", []) if s != HUMAN]
        if params:
            logger.debug("Bedrock text completion ignores: %s", ", ".join(sorted(params)))
        return body

    @staticmethod
    def _invoke(client, model: str, body: Dict[str, Any]) -> Dict[str, Any]:
        resp = client.invoke_model(
            modelId=model,
            contentType="application/json",
            accept="application/json",
            body=json.dumps(body),
        )
        return json.loads(resp["body"].read())

    async def dispatch(self, messages: Sequence[Message], ctx: ResolvedContext) -> StreamHandle:
        body = self._build_body(messages, ctx)
        client = self._client(ctx)
        try:
            call = asyncio.to_thread(self._invoke, client, ctx.model, body)
            payload = await (asyncio.wait_for(call, self.timeout) if self.timeout else call)
        except asyncio.TimeoutError as e:
            raise NetworkError(f"No response within {self.timeout:g}s") from e
        except ValueError as e:
            raise ProviderError("Malformed Bedrock response") from e
        except Exception as e:
            raise _classify_bedrock_exception(e) from e
        finally:
            client.close()

        text = payload.get("completion") if isinstance(payload, dict) else None
        text = text.strip() if isinstance(text, str) else ""
        return StreamHandle.final(text or NO_RESPONSE)
