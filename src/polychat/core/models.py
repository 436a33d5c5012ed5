from __future__ import annotations
import base64
from dataclasses import dataclass, field, fields as dc_fields
from typing import Any, Dict, List, Literal, Mapping, Optional, Tuple, Union

from .errors import UnsupportedContentError, ValidationError

Role = Literal["user", "assistant"]
Credentials = Dict[str, Dict[str, str]]

_ROLES = ("user", "assistant")


@dataclass(frozen=True)
class TextBlock:
    text: str
    type: str = field(default="text", init=False)

    def as_text(self) -> str:
        return self.text


@dataclass(frozen=True)
class ImageBlock:
    """
    Image content, already read into memory.
    data: base64 text of the image bytes (never a pending-upload placeholder).
    """
    media_type: str
    data: str
    type: str = field(default="image", init=False)

    def __post_init__(self) -> None:
        if not str(self.media_type).startswith("image/"):
            raise ValidationError(f"Unsupported image media type '{self.media_type}'")
        if not self.data:
            raise ValidationError("Image block carries no data")

    def raw_bytes(self) -> bytes:
        return base64.b64decode(self.data)

    def data_url(self) -> str:
        return f"data:{self.media_type};base64,{self.data}"

    def as_text(self) -> str:
        raise UnsupportedContentError(self.type)


ContentBlock = Union[TextBlock, ImageBlock]


@dataclass(frozen=True)
class Message:
    role: Role
    content: Tuple[ContentBlock, ...]

    def __post_init__(self) -> None:
        if self.role not in _ROLES:
            raise ValidationError(f"Unknown message role '{self.role}'")
        # Accept any sequence but store a tuple so the message stays immutable
        object.__setattr__(self, "content", tuple(self.content))
        if not self.content:
            raise ValidationError("A message needs at least one content block")

    @classmethod
    def text(cls, role: Role, text: str) -> "Message":
        return cls(role=role, content=(TextBlock(text),))

    def to_dict(self) -> Dict[str, Any]:
        blocks: List[Dict[str, Any]] = []
        for b in self.content:
            if isinstance(b, ImageBlock):
                blocks.append({"type": "image", "media_type": b.media_type, "data": b.data})
            else:
                blocks.append({"type": "text", "text": b.text})
        return {"role": self.role, "content": blocks}

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "Message":
        blocks: List[ContentBlock] = []
        for b in raw.get("content") or []:
            if b.get("type") == "image":
                blocks.append(ImageBlock(media_type=b["media_type"], data=b["data"]))
            else:
                blocks.append(TextBlock(str(b.get("text", ""))))
        return cls(role=raw["role"], content=tuple(blocks))


@dataclass(frozen=True)
class Result:
    iteration: int
    response: str
    error: bool = False


# camelCase spelling used by the settings form -> field name
_FORM_KEYS = {
    "systemPrompt": "system_prompt",
    "topP": "top_p",
    "maxTokens": "max_tokens",
    "frequencyPenalty": "frequency_penalty",
    "presencePenalty": "presence_penalty",
    "stopSequences": "stop_sequences",
}

_RANGES = {
    "temperature": (0.0, 1.0),
    "top_p": (0.0, 1.0),
    "frequency_penalty": (0.0, 2.0),
    "presence_penalty": (0.0, 2.0),
}


def parse_stop_sequences(value: Any) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return tuple(s.strip() for s in value.split(",") if s.strip())
    return tuple(str(s) for s in value if str(s))


def _is_number(v: Any) -> bool:
    return isinstance(v, (int, float)) and not isinstance(v, bool)


@dataclass(frozen=True)
class GenerationSettings:
    system_prompt: str = ""
    temperature: float = 0.25
    top_p: float = 1.0
    max_tokens: int = 256
    frequency_penalty: float = 0.0
    presence_penalty: float = 0.0
    stop_sequences: Tuple[str, ...] = ()
    iterations: int = 2

    @classmethod
    def from_mapping(cls, raw: Optional[Mapping[str, Any]], base: Optional["GenerationSettings"] = None
                     ) -> "GenerationSettings":
        """
        Build settings from a form/YAML mapping. Keys may be camelCase or snake_case;
        unknown keys raise ValidationError. Missing keys keep the values of `base`.
        """
        known = {f.name for f in dc_fields(cls)}
        values: Dict[str, Any] = {}
        for key, val in (raw or {}).items():
            name = _FORM_KEYS.get(key, key)
            if name not in known:
                raise ValidationError(f"Unknown setting '{key}'")
            values[name] = val
        base = base or cls()
        return base.replace(**values)

    def replace(self, **changes: Any) -> "GenerationSettings":
        if "stop_sequences" in changes:
            changes["stop_sequences"] = parse_stop_sequences(changes["stop_sequences"])
        current = {f.name: getattr(self, f.name) for f in dc_fields(self)}
        current.update(changes)
        return GenerationSettings(**current)

    def problems(self, max_tokens_cap: Optional[int] = None) -> List[str]:
        out: List[str] = []
        if not isinstance(self.system_prompt, str):
            out.append("system_prompt must be a string")
        for name, (lo, hi) in _RANGES.items():
            v = getattr(self, name)
            if not _is_number(v) or not (lo <= v <= hi):
                out.append(f"{name} must be a number in [{lo:g}, {hi:g}] (got {v!r})")
        if not isinstance(self.max_tokens, int) or isinstance(self.max_tokens, bool) or self.max_tokens < 1:
            out.append(f"max_tokens must be a positive integer (got {self.max_tokens!r})")
        elif max_tokens_cap is not None and self.max_tokens > max_tokens_cap:
            out.append(f"max_tokens must be <= {max_tokens_cap} for this provider (got {self.max_tokens})")
        if not isinstance(self.iterations, int) or isinstance(self.iterations, bool) or self.iterations < 1:
            out.append(f"iterations must be an integer >= 1 (got {self.iterations!r})")
        if not all(isinstance(s, str) for s in self.stop_sequences):
            out.append("stop_sequences must be strings")
        return out

    def wire_params(self) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "temperature": self.temperature,
            "top_p": self.top_p,
            "max_tokens": self.max_tokens,
            "frequency_penalty": self.frequency_penalty,
            "presence_penalty": self.presence_penalty,
        }
        if self.stop_sequences:
            params["stop"] = list(self.stop_sequences)
        return params

    def to_dict(self) -> Dict[str, Any]:
        d = {f.name: getattr(self, f.name) for f in dc_fields(self)}
        d["stop_sequences"] = list(self.stop_sequences)
        return d
