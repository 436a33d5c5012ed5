from __future__ import annotations
from typing import Callable, Dict, List, Type
from importlib import import_module

_BUILTIN_MODULES = (
    "polychat.providers.bedrock_adapter",
    "polychat.providers.completion_adapter",
    "polychat.providers.openai_adapter",
    "polychat.providers.echo",
)


class ProviderRegistry:
    """Adapter classes by provider id. Ids are case-insensitive."""

    _classes: Dict[str, Type] = {}

    @classmethod
    def register(cls, name: str) -> Callable[[Type], Type]:
        key = name.lower()

        def deco(klass: Type) -> Type:
            klass.name = key
            cls._classes[key] = klass
            return klass
        return deco

    @classmethod
    def get(cls, name: str) -> Type:
        key = name.lower()
        if key not in cls._classes:
            raise KeyError(f"Provider '{name}' not registered")
        return cls._classes[key]

    @classmethod
    def names(cls) -> List[str]:
        return sorted(cls._classes)

    @classmethod
    def ensure_imports(cls) -> None:
        """
        Import built-in adapters so their @register decorators run.
        Call once at bootstrap before get().
        """
        for mod in _BUILTIN_MODULES:
            import_module(mod)
