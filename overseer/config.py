"""Load ``overseer.yaml`` and the ``OVERSEER_*`` environment overrides."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path
from types import MappingProxyType
from typing import Any, Optional

import yaml

from overseer.logging import get_logger
from overseer.providers.types import (
    DEFAULT_GRACE_PERIOD_SECONDS,
    InvocationMode,
    ProviderType,
)

__all__ = [
    "CONFIG_ENV_VAR",
    "ConfigError",
    "DEFAULT_CONFIG_FILENAME",
    "OverseerConfig",
    "ProviderSettings",
    "load_config",
    "parse_config",
]

logger = get_logger(__name__)

DEFAULT_CONFIG_FILENAME = "overseer.yaml"
DEFAULT_HARD_TIMEOUT_SECONDS = 1800.0
CONFIG_ENV_VAR = "OVERSEER_CONFIG"
HARD_TIMEOUT_ENV_VAR = "OVERSEER_HARD_TIMEOUT"
STALL_TIMEOUT_ENV_VAR = "OVERSEER_STALL_TIMEOUT"

_TOP_LEVEL_KEYS = {
    "provider",
    "mode",
    "hard_timeout_seconds",
    "stall_timeout_seconds",
    "grace_period_seconds",
    "providers",
}
_PROVIDER_KEYS = {"model", "binary", "env"}


class ConfigError(ValueError):
    """Raised when configuration cannot be read or holds an invalid value."""


@dataclass(frozen=True)
class ProviderSettings:
    model: Optional[str] = None
    binary: Optional[str] = None
    env: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class OverseerConfig:
    provider: Optional[str] = None
    mode: InvocationMode = InvocationMode.HEADLESS
    hard_timeout_seconds: float = DEFAULT_HARD_TIMEOUT_SECONDS
    stall_timeout_seconds: Optional[float] = None
    grace_period_seconds: float = DEFAULT_GRACE_PERIOD_SECONDS
    providers: Mapping[str, ProviderSettings] = field(default_factory=dict)
    path: Optional[Path] = None

    def settings_for(self, provider: ProviderType | str) -> ProviderSettings:
        key = provider.value if isinstance(provider, ProviderType) else provider
        return self.providers.get(key, ProviderSettings())


def _positive_seconds(key: str, value: Any, *, allow_disable: bool = False) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, bool):
        raise ConfigError(f"{key} must be a number of seconds, got {value!r}")
    if isinstance(value, str):
        text = value.strip().lower()
        if allow_disable and text in {"", "off", "none"}:
            return None
        try:
            value = float(text)
        except ValueError as exc:
            raise ConfigError(f"{key} must be a number of seconds, got {value!r}") from exc
    if not isinstance(value, (int, float)):
        raise ConfigError(f"{key} must be a number of seconds, got {value!r}")
    seconds = float(value)
    if seconds <= 0:
        if allow_disable:
            return None
        raise ConfigError(f"{key} must be positive, got {value!r}")
    return seconds


def _parse_provider_settings(name: str, raw: Any) -> ProviderSettings:
    if raw is None:
        return ProviderSettings()
    if not isinstance(raw, Mapping):
        raise ConfigError(f"providers.{name} must be a mapping")
    unknown = set(raw) - _PROVIDER_KEYS
    if unknown:
        logger.warning("Ignoring unknown keys in providers.%s: %s", name, ", ".join(sorted(unknown)))

    model = raw.get("model")
    binary = raw.get("binary")
    for key, value in (("model", model), ("binary", binary)):
        if value is not None and not isinstance(value, str):
            raise ConfigError(f"providers.{name}.{key} must be a string")
    env = raw.get("env") or {}
    if not isinstance(env, Mapping):
        raise ConfigError(f"providers.{name}.env must be a mapping")
    return ProviderSettings(
        model=model or None,
        binary=os.path.expanduser(binary) if binary else None,
        env=MappingProxyType({str(key): str(value) for key, value in env.items()}),
    )


def parse_config(data: Mapping[str, Any], path: Optional[Path] = None) -> OverseerConfig:
    """Validate a decoded configuration mapping."""

    unknown = set(data) - _TOP_LEVEL_KEYS
    if unknown:
        logger.warning("Ignoring unknown configuration keys: %s", ", ".join(sorted(unknown)))

    provider = data.get("provider")
    if provider is not None:
        try:
            provider = ProviderType.from_string(str(provider)).value
        except ValueError as exc:
            valid = ", ".join(item.value for item in ProviderType)
            raise ConfigError(f"provider: unknown provider {provider!r} (valid: {valid})") from exc

    raw_mode = data.get("mode")
    mode = InvocationMode.HEADLESS
    if raw_mode is not None:
        try:
            mode = InvocationMode(str(raw_mode).strip().lower())
        except ValueError as exc:
            valid = ", ".join(item.value for item in InvocationMode)
            raise ConfigError(f"mode: unknown mode {raw_mode!r} (valid: {valid})") from exc

    hard = _positive_seconds("hard_timeout_seconds", data.get("hard_timeout_seconds"))
    stall = _positive_seconds(
        "stall_timeout_seconds", data.get("stall_timeout_seconds"), allow_disable=True
    )
    grace = data.get("grace_period_seconds", DEFAULT_GRACE_PERIOD_SECONDS)
    if isinstance(grace, bool) or not isinstance(grace, (int, float)) or grace < 0:
        raise ConfigError(f"grace_period_seconds must be a non-negative number, got {grace!r}")

    providers_raw = data.get("providers") or {}
    if not isinstance(providers_raw, Mapping):
        raise ConfigError("providers must be a mapping of provider name to settings")
    providers: dict[str, ProviderSettings] = {}
    for name, settings in providers_raw.items():
        try:
            key = ProviderType.from_string(str(name)).value
        except ValueError as exc:
            raise ConfigError(f"providers: unknown provider {name!r}") from exc
        providers[key] = _parse_provider_settings(key, settings)

    return OverseerConfig(
        provider=provider,
        mode=mode,
        hard_timeout_seconds=hard or DEFAULT_HARD_TIMEOUT_SECONDS,
        stall_timeout_seconds=stall,
        grace_period_seconds=float(grace),
        providers=MappingProxyType(providers),
        path=path,
    )


def _read_yaml(path: Path) -> Mapping[str, Any]:
    try:
        with path.open("r", encoding="utf-8") as handle:
            loaded = yaml.safe_load(handle) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"{path}: invalid YAML ({exc})") from exc
    except OSError as exc:
        raise ConfigError(f"{path}: cannot read configuration ({exc.strerror})") from exc
    if not isinstance(loaded, Mapping):
        raise ConfigError(f"{path}: top level must be a mapping")
    return loaded


def load_config(
    path: Optional[Path] = None,
    *,
    environ: Optional[Mapping[str, str]] = None,
    search_dir: Optional[Path] = None,
) -> OverseerConfig:
    """Load configuration from ``path``, ``$OVERSEER_CONFIG`` or ``./overseer.yaml``.

    A missing default file yields the built-in defaults; a missing file that
    was named explicitly is an error. Timeout environment variables are
    applied on top of the file.
    """

    env = os.environ if environ is None else environ
    explicit = path or env.get(CONFIG_ENV_VAR) or None
    if explicit is not None:
        resolved: Optional[Path] = Path(explicit).expanduser()
        if not resolved.is_file():
            raise ConfigError(f"Configuration file not found: {resolved}")
    else:
        candidate = (search_dir or Path.cwd()) / DEFAULT_CONFIG_FILENAME
        resolved = candidate if candidate.is_file() else None

    if resolved is None:
        config = OverseerConfig()
    else:
        logger.debug("Loading configuration from %s", resolved)
        config = parse_config(_read_yaml(resolved), resolved)

    hard_env = env.get(HARD_TIMEOUT_ENV_VAR)
    if hard_env:
        config = replace(
            config, hard_timeout_seconds=_positive_seconds(HARD_TIMEOUT_ENV_VAR, hard_env)
        )
    stall_env = env.get(STALL_TIMEOUT_ENV_VAR)
    if stall_env is not None:
        config = replace(
            config,
            stall_timeout_seconds=_positive_seconds(
                STALL_TIMEOUT_ENV_VAR, stall_env, allow_disable=True
            ),
        )
    return config
