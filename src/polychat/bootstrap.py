from __future__ import annotations
import logging
from pathlib import Path
from typing import Any, Dict, Optional, Tuple
from dotenv import load_dotenv

from .config_loader import KNOWN_PROVIDERS, ConfigError, load_config
from .core.chat_session import ChatSession
from .core.errors import ValidationError
from .core.models import GenerationSettings
from .core.ports import KeyStore
from .providers.param_policy import ParamPolicy
from .providers.registry import ProviderRegistry
from .resilience.resilient_provider import ResilientProvider, ResiliencePolicy
from .secrets.sources import SecretsKeyStore
from .storage.transcript import Transcript

logger = logging.getLogger(__name__)

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str = "WARNING") -> None:
    """Install one stream handler on the 'polychat' logger (idempotent)."""
    root = logging.getLogger("polychat")
    root.setLevel(str(level).upper())
    if not any(getattr(h, "_polychat", False) for h in root.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(_LOG_FORMAT))
        handler._polychat = True  # type: ignore[attr-defined]
        root.addHandler(handler)


def _policy_path(cfg: Dict[str, Any], config_path: Path, provider_name: str) -> Path:
    policy_file = (cfg.get("providers", {}).get(provider_name, {}) or {}).get("policy_file")
    if policy_file:
        p = Path(policy_file)
        # resolve relative to config dir
        return p if p.is_absolute() else config_path.parent / p
    # default location: config/providers/<name>.yaml
    return config_path.parent / "providers" / f"{provider_name}.yaml"


def build_provider(cfg: Dict[str, Any], config_path: Path) -> Tuple[ResilientProvider, Optional[ParamPolicy]]:
    ProviderRegistry.ensure_imports()  # make sure built-ins register

    provider_name = cfg["model"]["provider"]
    model_name = cfg["model"]["name"]
    provider_cfg = (cfg.get("providers") or {}).get(provider_name, {}) or {}

    policy_path = _policy_path(cfg, config_path, provider_name)
    policy = ParamPolicy.load(policy_path) if policy_path.exists() else None

    Adapter = ProviderRegistry.get(provider_name)
    inner = Adapter.create(model_name=model_name, provider_cfg=provider_cfg)
    retries = int((cfg.get("runtime") or {}).get("retries", 2))
    return ResilientProvider(inner, policy=ResiliencePolicy(max_retries=retries)), policy


def build_key_store(cfg: Dict[str, Any]) -> SecretsKeyStore:
    ProviderRegistry.ensure_imports()
    secrets_cfg = cfg.get("secrets") or {}
    fields = {}
    for name in KNOWN_PROVIDERS:
        Adapter = ProviderRegistry.get(name)
        wanted = tuple(Adapter.required_credentials) + tuple(getattr(Adapter, "optional_credentials", ()))
        if wanted:
            fields[name] = wanted
    return SecretsKeyStore(
        method=secrets_cfg.get("method", "env"),
        mapping=secrets_cfg.get("mapping", {}),
        fields=fields,
    )


def build_settings(cfg: Dict[str, Any]) -> GenerationSettings:
    try:
        return GenerationSettings.from_mapping(cfg.get("settings") or {})
    except ValidationError as e:
        raise ConfigError(f"Invalid settings section: {e}") from e


def build_app(
    config_path: Path,
    repo_root: Optional[Path] = None,
    *,
    provider: Optional[str] = None,
    model: Optional[str] = None,
    key_store: Optional[KeyStore] = None,
) -> Dict[str, Any]:
    """
    Composition root: load YAML, build provider (wrapped with resilience),
    key store, transcript and chat session.
    Returns: dict with cfg, paths, provider, key_store, transcript, session, warnings.
    """
    load_dotenv()
    cfg = load_config(config_path)
    config_dir = config_path.resolve().parent
    repo_root = repo_root or Path.cwd()

    runtime = cfg.get("runtime") or {}
    configure_logging(runtime.get("log_level", "WARNING"))

    if provider:
        provider = provider.lower()
        if provider not in KNOWN_PROVIDERS:
            raise ConfigError(f"Unknown provider '{provider}' (expected one of {', '.join(KNOWN_PROVIDERS)}).")
        cfg["model"]["provider"] = provider
    if model:
        cfg["model"]["name"] = model

    provider_obj, policy = build_provider(cfg, config_path)
    key_store = key_store or build_key_store(cfg)
    settings = build_settings(cfg)

    # ----- Transcript path -----
    tdir_path = Path(cfg["storage"]["transcripts_dir"])
    transcripts_dir = (repo_root / tdir_path).resolve() if not tdir_path.is_absolute() else tdir_path

    backend = cfg["storage"]["backend"]
    transcript = Transcript(
        session_id=cfg["storage"].get("resume"),
        root_dir=(transcripts_dir if backend == "file" else None),
        header_meta={
            "config_path": str(config_path),
            "provider": cfg["model"]["provider"],
            "model": cfg["model"]["name"],
        },
    )

    session = ChatSession(
        provider_obj,
        transcript,
        settings=settings,
        key_store=key_store,
        require_system_prompt=bool(runtime.get("require_system_prompt", False)),
        policy=policy,
    )

    warnings = []
    if policy is not None:
        # surface drops/rejections for the configured settings up front
        try:
            _, warnings = policy.evaluate(cfg["model"]["name"], settings.wire_params())
        except ValidationError as e:
            raise ConfigError(str(e)) from e

    return {
        "cfg": cfg,
        "paths": {"config_dir": config_dir, "repo_root": repo_root, "transcripts_dir": transcripts_dir},
        "provider": provider_obj,
        "key_store": key_store,
        "transcript": transcript,
        "session": session,
        "warnings": warnings,
    }
