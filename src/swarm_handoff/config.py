"""Orchestrator configuration management.

Two inputs configure a run:

- The Environment, a ``.env`` file holding the deployment parameters
  (SERVER_IP, DOMAIN, EMAIL, generated passwords). It is loaded once and
  passed explicitly to every component.
- Orchestrator settings (timeouts, control plane login, apply mode) stored
  in ~/.swarm-handoff/config.yaml, with environment variable overrides.
"""

import os
import secrets
import string
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, fields
from pathlib import Path
from types import MappingProxyType
from typing import Any

import structlog
import yaml
from dotenv import dotenv_values, set_key

from .errors import ConfigError
from .shared.paths import CONFIG_FILE

logger = structlog.get_logger(__name__)

# Environment keys the default definition cannot run without
REQUIRED_KEYS = ("SERVER_IP", "DOMAIN", "EMAIL")

DEFAULT_PASSWORD_KEY = "PASSWORD_32"
GENERATED_SECRET_LENGTH = 32

# Applied when the env file leaves a key out or empty
ENVIRONMENT_DEFAULTS = {"PORTAINER_WITH_DOMAIN": "true"}

ENV_PREFIX = "SWARM_HANDOFF_"


@dataclass
class OrchestratorConfig:
    """Orchestrator settings."""

    readiness_timeout: float = 120.0
    readiness_interval: float = 3.0
    strict_readiness: bool = False
    drain_attempts: int = 60
    drain_interval: float = 3.0
    max_parallel: int = 4
    apply_mode: str = "direct"
    control_plane_url: str = "https://portainerapp.${DOMAIN}"
    control_plane_user: str = "admin"
    password_key: str = DEFAULT_PASSWORD_KEY
    endpoint_id: int = 1
    verify_tls: bool = False
    definition: str | None = None
    rendered_dir: str | None = None
    log_level: str = "warning"

    # Track where each value came from
    _sources: dict[str, str] = field(default_factory=dict, repr=False)

    def get_source(self, key: str) -> str:
        """Get the source of a config value."""
        return self._sources.get(key, "default")


def _settings() -> dict[str, Any]:
    return {f.name: f.type for f in fields(OrchestratorConfig) if not f.name.startswith("_")}


def _coerce(key: str, value: Any, kind: Any) -> Any:
    try:
        if kind is bool:
            if isinstance(value, bool):
                return value
            return str(value).strip().lower() in ("1", "true", "yes", "on")
        if kind is int:
            return int(value)
        if kind is float:
            return float(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid value for {key}: {value!r}") from e
    return None if value is None else str(value)


def get_config_path() -> Path:
    """Get the orchestrator config file path.

    Returns:
        Path to ~/.swarm-handoff/config.yaml
    """
    return CONFIG_FILE


def load_config(
    path: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> OrchestratorConfig:
    """Load orchestrator configuration.

    Precedence (highest to lowest):
    1. Environment variables (SWARM_HANDOFF_<KEY>)
    2. Config file (~/.swarm-handoff/config.yaml)
    3. Defaults

    Args:
        path: Config file (default: ~/.swarm-handoff/config.yaml)
        environ: Variables to read overrides from (default: os.environ)

    Returns:
        OrchestratorConfig with values and sources

    Raises:
        ConfigError: Unparseable config file or invalid value.
    """
    config = OrchestratorConfig()
    settings = _settings()
    sources = {key: "default" for key in settings}
    environ = os.environ if environ is None else environ

    config_path = path or get_config_path()
    if config_path.exists():
        try:
            with open(config_path) as f:
                file_config = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Cannot read config file {config_path}: {e}") from e
        if not isinstance(file_config, dict):
            raise ConfigError(f"Config file {config_path} must be a mapping")

        for key, value in file_config.items():
            if key not in settings:
                logger.warning(f"Ignoring unknown config key: {key}")
                continue
            setattr(config, key, _coerce(key, value, settings[key]))
            sources[key] = "config file"

    for key, kind in settings.items():
        value = environ.get(ENV_PREFIX + key.upper())
        if value:
            setattr(config, key, _coerce(key, value, kind))
            sources[key] = "environment"

    config._sources = sources
    return config


# -----------------------------------------------------------------------------
# Environment
# -----------------------------------------------------------------------------


def load_environment(env_file: Path) -> Mapping[str, str]:
    """Load the deployment Environment from a ``.env`` file.

    Comment lines are ignored and keys without a value are dropped.
    Keys in ENVIRONMENT_DEFAULTS that are absent or empty get their default.

    Returns:
        Read-only mapping of key to value.

    Raises:
        ConfigError: The file does not exist.
    """
    if not env_file.is_file():
        raise ConfigError(f"Environment file not found: {env_file}")
    values = {key: value for key, value in dotenv_values(env_file).items() if value is not None}
    for key, default in ENVIRONMENT_DEFAULTS.items():
        if not values.get(key):
            values[key] = default
    return MappingProxyType(values)


def validate_environment(params: Mapping[str, str], required: Iterable[str] = REQUIRED_KEYS) -> None:
    """Raise ConfigError listing every required key that is missing or empty."""
    missing = [key for key in required if not params.get(key)]
    if missing:
        raise ConfigError(
            f"Missing required environment keys: {', '.join(missing)}",
            details={"missing": missing},
        )


def generate_secret(length: int = GENERATED_SECRET_LENGTH) -> str:
    """Random alphanumeric secret."""
    alphabet = string.ascii_letters + string.digits
    return "".join(secrets.choice(alphabet) for _ in range(length))


def ensure_generated_secret(
    env_file: Path,
    key: str = DEFAULT_PASSWORD_KEY,
    length: int = GENERATED_SECRET_LENGTH,
) -> bool:
    """Generate ``key`` into ``env_file`` unless it already holds a value.

    The value is persisted so reruns reuse the same password.

    Returns:
        True if a value was generated.

    Raises:
        ConfigError: The file does not exist.
    """
    if not env_file.is_file():
        raise ConfigError(f"Environment file not found: {env_file}")
    current = dotenv_values(env_file).get(key)
    if current:
        return False

    set_key(str(env_file), key, generate_secret(length), quote_mode="never")
    env_file.chmod(0o600)
    logger.info(f"Generated {key} in {env_file}")
    return True
