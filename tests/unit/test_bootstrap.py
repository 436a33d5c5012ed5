# tests/unit/test_bootstrap.py

from __future__ import annotations
import sys
from pathlib import Path
from textwrap import dedent

import pytest

# Ensure "src" is importable
sys.path.insert(0, str(Path(__file__).resolve().parents[2] / "src"))

from polychat.bootstrap import build_app, build_key_store
from polychat.config_loader import ConfigError
from polychat.core.chat_session import ChatSession
from polychat.resilience.resilient_provider import ResilientProvider
from polychat.secrets.sources import MemoryKeyStore


def _write_config(tmp_path: Path, *, provider: str = "echo", name: str = "echo-model",
                  settings: str = "") -> Path:
    cfg_dir = tmp_path / "config"
    cfg_dir.mkdir(parents=True, exist_ok=True)
    sessions_dir = tmp_path / "sessions"
    cfg = cfg_dir / "default.yaml"
    cfg.write_text(
        dedent(
            f"""
            model:
              provider: {provider}
              name: {name}
            providers:
              echo:
                token_delay: 0.0
            secrets:
              method: env
              mapping: {{}}
            storage:
              backend: file
              transcripts_dir: "{sessions_dir}"
              resume: null
            runtime:
              retries: 3
            """
        ) + dedent(settings),
        encoding="utf-8",
    )
    return cfg


def test_build_app_echo(tmp_path: Path):
    cfg = _write_config(tmp_path)

    ctx = build_app(cfg, repo_root=tmp_path)

    assert isinstance(ctx["provider"], ResilientProvider)
    assert ctx["provider"].policy.max_retries == 3
    assert ctx["provider"].name == "echo"
    assert ctx["paths"]["transcripts_dir"] == tmp_path / "sessions"
    assert ctx["cfg"]["model"]["provider"] == "echo"
    assert (tmp_path / "sessions").is_dir()
    assert isinstance(ctx["session"], ChatSession)
    assert ctx["warnings"] == []


def test_settings_section_feeds_session(tmp_path: Path):
    cfg = _write_config(tmp_path, settings="""
        settings:
          temperature: 0.5
          maxTokens: 64
          stopSequences: "END, STOP"
          iterations: 3
    """)
    session = build_app(cfg, repo_root=tmp_path)["session"]
    assert session.settings.temperature == 0.5
    assert session.settings.max_tokens == 64
    assert session.settings.stop_sequences == ("END", "STOP")
    assert session.settings.iterations == 3


def test_unknown_setting_is_config_error(tmp_path: Path):
    cfg = _write_config(tmp_path, settings="""
        settings:
          temprature: 0.5
    """)
    with pytest.raises(ConfigError):
        build_app(cfg, repo_root=tmp_path)


def test_overrides_and_policy_warnings(tmp_path: Path):
    cfg = _write_config(tmp_path)
    policy = tmp_path / "config" / "providers" / "vision.yaml"
    policy.parent.mkdir(parents=True)
    policy.write_text(dedent("""
        rules:
          - when_model_matches: "^o\\\\d"
            action: drop
            params: [temperature, top_p]
            message: "Sampling parameters dropped."
    """), encoding="utf-8")

    ctx = build_app(cfg, repo_root=tmp_path, provider="VISION", model="o3-mini",
                    key_store=MemoryKeyStore({"vision": {"api_key": "sk-test"}}))

    assert ctx["cfg"]["model"]["provider"] == "vision"
    assert ctx["provider"].model == "o3-mini"
    assert ctx["warnings"] == ["Sampling parameters dropped."]
    # the same policy applies per turn through the resolver
    resolved = ctx["session"].resolve()
    assert "temperature" not in resolved.params
    assert resolved.warnings == ("Sampling parameters dropped.",)


def test_policy_reject_is_config_error(tmp_path: Path):
    cfg = _write_config(tmp_path, provider="vision", name="legacy-1")
    policy = tmp_path / "config" / "providers" / "vision.yaml"
    policy.parent.mkdir(parents=True)
    policy.write_text(dedent("""
        rules:
          - when_model_matches: "^legacy"
            action: reject
            params: [temperature]
    """), encoding="utf-8")
    with pytest.raises(ConfigError):
        build_app(cfg, repo_root=tmp_path, key_store=MemoryKeyStore())


def test_unknown_provider_override(tmp_path: Path):
    cfg = _write_config(tmp_path)
    with pytest.raises(ConfigError):
        build_app(cfg, repo_root=tmp_path, provider="nope")


def test_bedrock_credentials_come_from_env(monkeypatch):
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "AKIA0000")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "s3cr3t")
    monkeypatch.setenv("AWS_REGION", "us-west-1")
    monkeypatch.setenv("AWS_SESSION_TOKEN", "tok")
    cfg = {"secrets": {"method": "env", "mapping": {"bedrock": {
        "access_key": "AWS_ACCESS_KEY_ID", "secret_key": "AWS_SECRET_ACCESS_KEY",
        "region": "AWS_REGION", "session_token": "AWS_SESSION_TOKEN"}}}}
    creds = build_key_store(cfg).get()
    # optional fields are loaded next to the required ones
    assert creds["bedrock"] == {"access_key": "AKIA0000", "secret_key": "s3cr3t",
                                "region": "us-west-1", "session_token": "tok"}
