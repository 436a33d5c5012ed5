# tests/unit/test_param_policy.py

from __future__ import annotations
import sys
from pathlib import Path

# Make "src" importable
sys.path.insert(0, str(Path(__file__).resolve().parents[2] / "src"))

import pytest

from polychat.core.errors import ValidationError
from polychat.providers.param_policy import ParamPolicy


def write_yaml(p: Path, text: str) -> Path:
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(text.strip() + "\n", encoding="utf-8")
    return p


def test_policy_drop_removes_params_and_warns(tmp_path: Path):
    # GIVEN a policy that drops sampling knobs for reasoning models
    policy_file = write_yaml(
        tmp_path / "providers" / "vision.yaml",
        """
rules:
  - when_model_matches: "^o\\\\d"
    action: drop
    params: [temperature, top_p, frequency_penalty, presence_penalty]
    message: "Reasoning models use fixed sampling."
        """,
    )
    policy = ParamPolicy.load(policy_file)

    raw = {"temperature": 0.2, "top_p": 0.9, "max_tokens": 256}
    effective, warnings = policy.evaluate("o3-mini", raw)

    # THEN unsupported are removed, others untouched
    assert "temperature" not in effective
    assert "top_p" not in effective
    assert effective["max_tokens"] == 256
    assert warnings == ["Reasoning models use fixed sampling."]
    # the caller's mapping is not mutated
    assert raw["temperature"] == 0.2


def test_policy_no_match_passes_through(tmp_path: Path):
    policy_file = write_yaml(
        tmp_path / "p.yaml",
        """
rules:
  - when_model_matches: "^o1"
    action: drop
    params: [temperature]
        """,
    )
    policy = ParamPolicy.load(policy_file)
    effective, warnings = policy.evaluate("gpt-4o-mini", {"temperature": 0.7})
    assert effective == {"temperature": 0.7}
    assert warnings == []


def test_policy_reject_raises_validation_error(tmp_path: Path):
    policy_file = write_yaml(
        tmp_path / "p.yaml",
        """
rules:
  - when_model_matches: "legacy"
    action: reject
    params: [stop]
    message: "Stop sequences are not supported."
        """,
    )
    policy = ParamPolicy.load(policy_file)
    with pytest.raises(ValidationError) as ei:
        policy.evaluate("legacy-model", {"stop": ["x"], "temperature": 0.1})
    assert ei.value.problems == ["stop"]
    # nothing to reject: passes through
    assert policy.evaluate("legacy-model", {"temperature": 0.1}) == ({"temperature": 0.1}, [])


def test_first_matching_rule_wins(tmp_path: Path):
    policy_file = write_yaml(
        tmp_path / "p.yaml",
        """
rules:
  - when_model_matches: "^o1-preview"
    action: allow
    params: []
  - when_model_matches: "^o1"
    action: drop
    params: [temperature]
        """,
    )
    policy = ParamPolicy.load(policy_file)
    assert policy.evaluate("o1-preview", {"temperature": 1.0})[0] == {"temperature": 1.0}
    assert policy.evaluate("o1-mini", {"temperature": 1.0})[0] == {}


def test_unknown_action_is_rejected_on_load(tmp_path: Path):
    policy_file = write_yaml(
        tmp_path / "p.yaml",
        """
rules:
  - when_model_matches: ".*"
    action: ignore
    params: [temperature]
        """,
    )
    with pytest.raises(ValueError):
        ParamPolicy.load(policy_file)
