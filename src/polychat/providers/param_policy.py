from __future__ import annotations
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from polychat.core.errors import ValidationError

_ACTIONS = ("allow", "drop", "reject")


@dataclass
class PolicyRule:
    regex: re.Pattern
    action: str              # "allow" | "drop" | "reject"
    params: List[str]
    message: Optional[str] = None


@dataclass
class ParamPolicy:
    """
    Per-model rules for generation parameters, first match wins.

        rules:
          - when_model_matches: "^o1"
            action: drop
            params: [temperature, top_p]
            message: "Reasoning models use fixed sampling."
    """
    rules: List[PolicyRule] = field(default_factory=list)

    @classmethod
    def load(cls, path: Path) -> "ParamPolicy":
        data = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
        rules: List[PolicyRule] = []
        for r in data.get("rules", []):
            action = str(r["action"]).lower()
            if action not in _ACTIONS:
                raise ValueError(f"Unknown policy action '{r['action']}' in {path}")
            rules.append(PolicyRule(
                regex=re.compile(str(r["when_model_matches"])),
                action=action,
                params=[str(p) for p in r.get("params", [])],
                message=r.get("message"),
            ))
        return cls(rules)

    def rule_for(self, model: str) -> Optional[PolicyRule]:
        return next((r for r in self.rules if r.regex.search(model)), None)

    def evaluate(self, model: str, params: Dict[str, Any]) -> Tuple[Dict[str, Any], List[str]]:
        """
        Returns (effective_params, warnings).
        - drop:   listed keys are removed, one warning names them
        - reject: any listed key present raises ValidationError
        - allow / no match: params pass through unchanged
        """
        effective = dict(params or {})
        warnings: List[str] = []
        rule = self.rule_for(model)
        if rule is None or rule.action == "allow":
            return effective, warnings

        hit = sorted(k for k in rule.params if k in effective)
        if not hit:
            return effective, warnings

        if rule.action == "reject":
            raise ValidationError(rule.message or f"Unsupported params for model '{model}'", hit)

        for k in hit:
            effective.pop(k, None)
        warnings.append(rule.message or f"Dropping unsupported params for model '{model}': {hit}")
        return effective, warnings
