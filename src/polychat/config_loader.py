# src/polychat/config_loader.py

from __future__ import annotations
from pathlib import Path
from typing import Any, Dict
import yaml

KNOWN_PROVIDERS = ("completion", "vision", "bedrock", "echo")
STORAGE_BACKENDS = ("file", "none")

# dotted keys every config must carry, all strings
_REQUIRED = ("model.provider", "model.name", "storage.backend", "storage.transcripts_dir")
_SECTIONS = ("settings", "providers", "secrets", "runtime")


class ConfigError(ValueError):
    pass


def _lookup(d: Dict[str, Any], dotted: str) -> Any:
    cur: Any = d
    for part in dotted.split("."):
        if not isinstance(cur, dict) or part not in cur:
            raise ConfigError(f"Missing config key: {dotted}")
        cur = cur[part]
    return cur


def _one_of(value: str, allowed: tuple, key: str) -> str:
    norm = value.lower()
    if norm not in allowed:
        raise ConfigError(f"Unknown {key} '{value}' (expected one of {', '.join(allowed)}).")
    return norm


def load_config(path: Path) -> Dict[str, Any]:
    """
    Read and validate a YAML config. Enumerations are lower-cased, optional
    sections default to {}, paths are left as written (bootstrap resolves them).
    """
    if not path or not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    if not isinstance(raw, dict) or not raw:
        raise ConfigError(f"Config is empty or invalid YAML: {path}")

    for dotted in _REQUIRED:
        if not isinstance(_lookup(raw, dotted), str):
            raise ConfigError(f"'{dotted}' must be a string")

    raw["model"]["provider"] = _one_of(raw["model"]["provider"], KNOWN_PROVIDERS, "model.provider")
    raw["storage"]["backend"] = _one_of(raw["storage"]["backend"], STORAGE_BACKENDS, "storage.backend")

    for key in _SECTIONS:
        section = raw.get(key)
        if section is None:
            raw[key] = {}
        elif not isinstance(section, dict):
            raise ConfigError(f"'{key}' must be a mapping")

    runtime = raw["runtime"]
    if not isinstance(runtime.get("require_system_prompt", False), bool):
        raise ConfigError("'runtime.require_system_prompt' must be a boolean")
    retries = runtime.get("retries", 2)
    if isinstance(retries, bool) or not isinstance(retries, int) or retries < 0:
        raise ConfigError("'runtime.retries' must be a non-negative integer")
    return raw
