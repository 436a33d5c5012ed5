# src/polychat/secrets/sources.py

from __future__ import annotations
from typing import Protocol, Optional, Dict, Iterable, List, Mapping, Sequence, Union
import copy, logging, os

import keyring as _keyring
from keyring.errors import KeyringError, PasswordDeleteError

from polychat.core.models import Credentials

logger = logging.getLogger(__name__)

# account name credentials are stored under in the OS keyring
_KEYRING_ACCOUNT = "API_KEY"


class SecretSource(Protocol):
    writable: bool

    def get(self, service: str) -> Optional[str]: ...


class EnvSource:
    """Process environment, including anything load_dotenv() put there."""

    writable = False

    def get(self, service: str) -> Optional[str]:
        # exact name first, then <SERVICE>_API_KEY and <SERVICE>
        for key in (service, f"{service.upper()}_API_KEY", service.upper()):
            val = (os.getenv(key) or "").strip()
            if val:
                return val
        return None


class SystemKeyringSource:
    """OS keyring: macOS Keychain, Secret Service, Windows Credential Locker."""

    writable = True

    def get(self, service: str) -> Optional[str]:
        try:
            cred = _keyring.get_credential(service, None)
            if cred is not None and cred.password:
                return cred.password.strip()
            for account in (_KEYRING_ACCOUNT, "default", service):
                val = _keyring.get_password(service, account)
                if val:
                    return val.strip()
        except KeyringError as e:
            # no usable backend here; the next source gets a chance
            logger.debug("Keyring lookup for %s failed: %s", service, e)
        return None

    def set(self, service: str, value: Optional[str]) -> None:
        if value:
            _keyring.set_password(service, _KEYRING_ACCOUNT, value)
            return
        try:
            _keyring.delete_password(service, _KEYRING_ACCOUNT)
        except PasswordDeleteError:
            logger.debug("No keyring entry to delete for %s", service)


_SOURCES = {"env": EnvSource, "keyring": SystemKeyringSource}


def build_secret_sources(method: Union[str, Iterable[str]]) -> List[SecretSource]:
    """Sources in lookup order. `method` is "env", "keyring" or a list of both."""
    names = [method] if isinstance(method, str) else list(method)
    sources: List[SecretSource] = []
    seen = set()
    for m in names:
        key = str(m).strip().lower()
        if key not in _SOURCES:
            raise ValueError(f"Unknown secrets method '{m}'. Allowed: {sorted(_SOURCES)}")
        if key not in seen:
            seen.add(key)
            sources.append(_SOURCES[key]())
    return sources


class SecretsKeyStore:
    """
    Key store backed by one or more secret sources, tried in order.
    mapping: per-provider map of credential field -> service/env-key
      e.g. { "vision": { "api_key": "OPENAI_API_KEY" } }
    Unmapped fields use the provider id for api_key, else "<provider>_<field>".
    fields: credential fields to load per provider, e.g. { "vision": ["api_key"] }
    """

    def __init__(
        self,
        method: Union[str, Iterable[str]],
        mapping: Optional[Dict[str, Dict[str, str]]] = None,
        fields: Optional[Mapping[str, Sequence[str]]] = None,
    ):
        self._sources = build_secret_sources(method)
        self._map = mapping or {}
        self._fields = {p: tuple(f) for p, f in (fields or {}).items()}

    def _service(self, provider: str, name: str) -> str:
        default = provider if name == "api_key" else f"{provider}_{name}"
        return self._map.get(provider, {}).get(name, default)

    def secret(self, provider: str, name: str = "api_key") -> Optional[str]:
        service = self._service(provider, name)
        return next((v for v in (src.get(service) for src in self._sources) if v), None)

    def get(self) -> Credentials:
        creds: Credentials = {}
        for provider, names in self._fields.items():
            for name in names:
                val = self.secret(provider, name)
                if val:
                    creds.setdefault(provider, {})[name] = val
        return creds

    def set(self, credentials: Credentials) -> None:
        """
        Write only the fields given; every other stored secret is left alone.
        Providers mapped to the same service share the written value.
        An empty value deletes the entry.
        """
        writable = [s for s in self._sources if getattr(s, "writable", False)]
        if not writable:
            raise ValueError("No writable secrets method configured (add 'keyring' to secrets.method)")
        for provider, values in credentials.items():
            for name, value in values.items():
                for src in writable:
                    src.set(self._service(provider, name), value)  # type: ignore[attr-defined]
                self._fields.setdefault(provider, ())
                if name not in self._fields[provider]:
                    self._fields[provider] += (name,)


class MemoryKeyStore:
    """In-process key store; nothing outlives the process."""

    def __init__(self, credentials: Optional[Credentials] = None):
        self._creds: Credentials = copy.deepcopy(credentials or {})

    def get(self) -> Credentials:
        return copy.deepcopy(self._creds)

    def set(self, credentials: Credentials) -> None:
        for provider, values in credentials.items():
            fields = self._creds.setdefault(provider, {})
            for name, value in values.items():
                if value:
                    fields[name] = value
                else:
                    fields.pop(name, None)


def mask_secret(value: Optional[str]) -> str:
    if not value:
        return ""
    if len(value) <= 8:
        return "*" * len(value)
    return f"{value[:3]}...{value[-4:]}"


def mask_credentials(credentials: Credentials) -> Dict[str, Dict[str, str]]:
    return {p: {k: mask_secret(v) for k, v in fields.items()} for p, fields in credentials.items()}
