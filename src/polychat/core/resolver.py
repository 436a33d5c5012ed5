from __future__ import annotations
import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Mapping, Optional, Sequence, Tuple

from .errors import MissingCredentialError, ValidationError
from .models import Credentials, GenerationSettings

if TYPE_CHECKING:
    from polychat.providers.param_policy import ParamPolicy

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResolvedContext:
    """Everything one dispatch needs; built by resolve() and never mutated."""
    provider: str
    model: str
    settings: GenerationSettings
    credentials: Mapping[str, str] = field(repr=False)
    params: Mapping[str, Any]
    warnings: Tuple[str, ...] = ()


def resolve(
    provider: str,
    credentials: Credentials,
    settings: GenerationSettings,
    *,
    model: str,
    required: Sequence[str] = ("api_key",),
    max_tokens_cap: Optional[int] = None,
    require_system_prompt: bool = False,
    policy: Optional["ParamPolicy"] = None,
) -> ResolvedContext:
    provided = dict((credentials or {}).get(provider) or {})
    missing = [name for name in required if not str(provided.get(name) or "").strip()]
    if missing:
        raise MissingCredentialError(provider, missing)

    if require_system_prompt and not (settings.system_prompt or "").strip():
        raise ValidationError("A system prompt is required")

    problems = settings.problems(max_tokens_cap)
    if problems:
        raise ValidationError("Invalid generation settings", problems)

    params = settings.wire_params()
    warnings: Tuple[str, ...] = ()
    if policy is not None:
        params, warns = policy.evaluate(model, params)
        warnings = tuple(warns)
        for w in warnings:
            logger.warning(w)

    return ResolvedContext(
        provider=provider,
        model=model,
        settings=settings,
        credentials=MappingProxyType({k: str(v).strip() for k, v in provided.items() if v}),
        params=MappingProxyType(params),
        warnings=warnings,
    )
