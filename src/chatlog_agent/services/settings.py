"""Persisted settings for the chat-log agent.

Settings live in a JSON file with a Fernet key file beside it. The API key is
never written in plaintext: it is stored as ``fernet:<token>`` under
``api_key_ciphertext``. Loading layers CLI overrides and then
``CHATLOG_AGENT_*`` environment variables on top of the file.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, get_args, get_origin, get_type_hints

from cryptography.fernet import Fernet, InvalidToken

__all__ = ["ENV_PREFIX", "Settings", "SettingsStore", "SecretVault", "coerce_setting"]

LOGGER = logging.getLogger(__name__)

ENV_PREFIX = "CHATLOG_AGENT_"
_DEFAULT_SETTINGS_PATH = Path.home() / ".chatlog_agent" / "settings.json"
_FORMAT_VERSION = 1
_CIPHERTEXT_KEY = "api_key_ciphertext"
_BOOKKEEPING_KEYS = ("version", "secret_backend")
_ENV_FIELDS = (
    "api_key",
    "base_url",
    "model",
    "embedding_model",
    "organization",
    "locale",
    "temperature",
    "max_tokens",
    "max_tool_rounds",
    "request_timeout",
    "max_retries",
    "debug_logging",
)
_TRUE_VALUES = frozenset({"1", "true", "yes", "on", "debug"})
_FALSE_VALUES = frozenset({"0", "false", "no", "off", "disabled"})


@dataclass(slots=True)
class Settings:
    """User-configurable settings persisted between sessions.

    An empty ``embedding_model`` disables the semantic retrieval pipeline.
    """

    base_url: str = "https://api.openai.com/v1"
    api_key: str = ""
    model: str = "gpt-4o-mini"
    embedding_model: str = ""
    organization: str | None = None
    temperature: float = 0.7
    max_tokens: int = 2048
    max_tool_rounds: int = 5
    locale: str = "zh-CN"
    request_timeout: float = 90.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    default_headers: dict[str, str] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)
    debug_logging: bool = False


def coerce_setting(name: str, raw: str) -> Any:
    """Convert the text form of a setting (``--set`` or environment) to its field type.

    Raises:
        ValueError: If ``name`` is not a setting or ``raw`` does not parse.
    """

    hints = get_type_hints(Settings)
    if name not in hints:
        raise ValueError(f"Unknown setting '{name}'.")
    target = _base_type(hints[name])
    text = raw.strip()
    if target is bool:
        lowered = text.lower()
        if lowered in _TRUE_VALUES:
            return True
        if lowered in _FALSE_VALUES:
            return False
        raise ValueError(f"Cannot coerce '{raw}' to a boolean.")
    if target is int:
        return int(text, 10)
    if target is float:
        return float(text)
    if target is dict:
        try:
            value = json.loads(text or "{}")
        except json.JSONDecodeError as exc:
            raise ValueError(f"'{name}' expects a JSON object") from exc
        if not isinstance(value, dict):
            raise ValueError(f"'{name}' expects a JSON object")
        return value
    return text


def _base_type(annotation: Any) -> Any:
    origin = get_origin(annotation)
    if origin is None:
        return annotation
    if origin is dict:
        return dict
    args = [arg for arg in get_args(annotation) if arg is not type(None)]
    return args[0] if args else origin


class SecretVault:
    """Fernet encryption for secrets kept in the settings file.

    The key is generated on first use and written with owner-only permissions.
    """

    backend = "fernet"

    def __init__(self, *, key_path: Path) -> None:
        self._key_path = key_path
        self._fernet: Fernet | None = None

    @property
    def key_path(self) -> Path:
        return self._key_path

    def encrypt(self, secret: str) -> str:
        if not secret:
            return ""
        token = self._cipher().encrypt(secret.encode("utf-8")).decode("ascii")
        return f"{self.backend}:{token}"

    def decrypt(self, token: str | None) -> str:
        """Return the plaintext of ``token``.

        Raises:
            ValueError: If the token names another backend or fails verification.
        """
        if not token:
            return ""
        backend, separator, payload = token.partition(":")
        if not separator:
            payload = token
        elif backend != self.backend:
            raise ValueError(f"Secret was written by unsupported backend {backend!r}")
        try:
            return self._cipher().decrypt(payload.encode("ascii")).decode("utf-8")
        except (InvalidToken, UnicodeEncodeError) as exc:
            raise ValueError("Stored secret is not a valid Fernet token") from exc

    def _cipher(self) -> Fernet:
        if self._fernet is None:
            self._fernet = Fernet(self._read_or_create_key())
        return self._fernet

    def _read_or_create_key(self) -> bytes:
        if self._key_path.exists():
            return self._key_path.read_bytes().strip()
        self._key_path.parent.mkdir(parents=True, exist_ok=True)
        key = Fernet.generate_key()
        try:
            descriptor = os.open(self._key_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        except FileExistsError:
            return self._key_path.read_bytes().strip()
        with os.fdopen(descriptor, "wb") as handle:
            handle.write(key)
        LOGGER.info("Created settings key at %s", self._key_path)
        return key


class SettingsStore:
    """JSON-file persistence for :class:`Settings`.

    Also serves as the agent's configuration accessor: ``load()`` returns the
    settings the semantic pipeline reads ``embedding_model`` from.
    """

    def __init__(self, path: Path | None = None, *, vault: SecretVault | None = None) -> None:
        self._path = path or _DEFAULT_SETTINGS_PATH
        self._vault = vault or SecretVault(key_path=self._path.with_suffix(".key"))

    @property
    def path(self) -> Path:
        return self._path

    @property
    def vault(self) -> SecretVault:
        return self._vault

    def load(self, *, overrides: Mapping[str, Any] | None = None) -> Settings:
        """Read the settings file, then apply ``overrides`` and the environment.

        A missing or malformed file yields defaults. A plaintext ``api_key``
        found in the file is re-saved encrypted.
        """

        settings = self._read()
        if overrides:
            settings = _merge(settings, overrides, source="CLI")
        environment = _environment_overrides()
        if environment:
            settings = _merge(settings, environment, source="environment")
        return settings

    def save(self, settings: Settings) -> Path:
        """Write ``settings`` atomically with the API key encrypted."""

        record = asdict(settings)
        api_key = record.pop("api_key") or ""
        if api_key:
            record[_CIPHERTEXT_KEY] = self._vault.encrypt(api_key)
        record["version"] = _FORMAT_VERSION
        record["secret_backend"] = self._vault.backend

        self._path.parent.mkdir(parents=True, exist_ok=True)
        staging = self._path.with_suffix(".tmp")
        staging.write_text(json.dumps(record, indent=2, sort_keys=True, ensure_ascii=False), encoding="utf-8")
        staging.replace(self._path)
        LOGGER.debug("Settings saved to %s", self._path)
        return self._path

    def _read(self) -> Settings:
        record = self._read_record()
        if not record:
            return Settings()

        ciphertext = record.pop(_CIPHERTEXT_KEY, None)
        plaintext = record.pop("api_key", None)
        for key in _BOOKKEEPING_KEYS:
            record.pop(key, None)
        known = {item.name for item in fields(Settings)}
        unknown = sorted(set(record) - known)
        if unknown:
            LOGGER.warning("Ignoring unknown settings keys in %s: %s", self._path, ", ".join(unknown))
        settings = Settings(**{key: value for key, value in record.items() if key in known})

        if ciphertext:
            try:
                settings.api_key = self._vault.decrypt(ciphertext)
            except ValueError as exc:
                LOGGER.warning("Stored API key could not be decrypted: %s", exc)
        elif plaintext:
            settings.api_key = plaintext
            LOGGER.info("Encrypting plaintext API key found in %s", self._path)
            try:
                self.save(settings)
            except OSError as exc:
                LOGGER.warning("Could not rewrite %s with an encrypted key: %s", self._path, exc)
        return settings

    def _read_record(self) -> Dict[str, Any]:
        try:
            record = json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as exc:
            LOGGER.warning("Settings file %s is not valid JSON: %s", self._path, exc)
            return {}
        if not isinstance(record, dict):
            LOGGER.warning("Settings file %s does not hold a JSON object", self._path)
            return {}
        return record


def _merge(settings: Settings, overrides: Mapping[str, Any], *, source: str) -> Settings:
    known = {item.name for item in fields(Settings)}
    changes: Dict[str, Any] = {}
    for name, value in overrides.items():
        if name not in known:
            LOGGER.warning("Ignoring unknown %s setting: %s", source, name)
            continue
        if value is None:
            continue
        if name == "metadata" and isinstance(value, Mapping):
            value = {**settings.metadata, **value}
        changes[name] = value
    if not changes:
        return settings
    LOGGER.debug("Applying %s settings: %s", source, sorted(changes))
    return replace(settings, **changes)


def _environment_overrides() -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    for name in _ENV_FIELDS:
        variable = f"{ENV_PREFIX}{name.upper()}"
        raw = os.environ.get(variable)
        if raw is None:
            continue
        try:
            overrides[name] = coerce_setting(name, raw)
        except ValueError as exc:
            LOGGER.warning("Ignoring environment override %s: %s", variable, exc)
    return overrides
