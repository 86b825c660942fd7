"""Orchestration definition loading.

A definition lists the cluster-wide resources and the units to deploy, with
their dependencies, probes, secrets, hooks and public hostnames. It is read
from YAML, or taken from the built-in default which deploys the edge router,
the admin console, the data tier and the applications in that order:

    traefik -> portainer -> {postgres, redis, rabbitmq, minio} -> {chatwoot, n8n}
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from ..errors import ConfigError
from .model import ClusterResource, ReadinessProbe, SecretRef, ServiceUnit, UnitHook

# Stack templates live next to the definition unless stacks_dir says otherwise
DEFAULT_STACKS_DIR = Path("stacks")

ADMIN_PASSWORD_KEY = "PASSWORD_32"

_CREATE_DB = (
    "psql -U postgres -tc \"SELECT 1 FROM pg_database WHERE datname='{db}'\" | grep -q 1"
    " || psql -U postgres -c 'CREATE DATABASE {db}'"
)

DEFAULT_DEFINITION: dict[str, Any] = {
    "resources": {
        "networks": ["agent_network", "traefik_public", "general_network"],
        "volumes": [
            "portainer_data",
            "certificados",
            "postgres_data",
            "redis_data",
            "rabbitmq_data",
            "minio_data",
            "chatwoot_data",
        ],
    },
    "units": [
        {
            "name": "traefik",
            "networks": ["traefik_public"],
            "volumes": ["certificados"],
            "handoff": False,
        },
        {
            "name": "portainer",
            "depends_on": ["traefik"],
            "networks": ["agent_network", "traefik_public"],
            "volumes": ["portainer_data"],
            "secrets": [{"name": "portainer_admin_password", "env": ADMIN_PASSWORD_KEY}],
            "probe": {"protocol": "https", "endpoint": "portainerapp.${DOMAIN}/api/status"},
            "domains": ["portainerapp.${DOMAIN}"],
            "handoff": False,
        },
        {
            "name": "postgres",
            "depends_on": ["portainer"],
            "networks": ["general_network"],
            "volumes": ["postgres_data"],
            "probe": {
                "protocol": "exec",
                "endpoint": "postgres_postgres",
                "command": ["pg_isready", "-U", "postgres"],
            },
            "hooks": [
                {
                    "service": "postgres_postgres",
                    "description": f"create database {db}",
                    "command": ["sh", "-c", _CREATE_DB.format(db=db)],
                    "env": {"PGPASSWORD": "${" + ADMIN_PASSWORD_KEY + "}"},
                }
                for db in ("chatwoot", "n8n_fila")
            ],
        },
        {
            "name": "redis",
            "depends_on": ["portainer"],
            "networks": ["general_network"],
            "volumes": ["redis_data"],
        },
        {
            "name": "rabbitmq",
            "depends_on": ["portainer"],
            "networks": ["general_network", "traefik_public"],
            "volumes": ["rabbitmq_data"],
            "domains": ["rabbitmqapp.${DOMAIN}"],
        },
        {
            "name": "minio",
            "depends_on": ["portainer"],
            "networks": ["general_network", "traefik_public"],
            "volumes": ["minio_data"],
            "domains": ["miniofrontapp.${DOMAIN}", "miniobackapp.${DOMAIN}"],
        },
        {
            "name": "chatwoot",
            "depends_on": ["postgres", "redis"],
            "networks": ["general_network", "traefik_public"],
            "volumes": ["chatwoot_data"],
            "probe": {"protocol": "https", "endpoint": "chatwootapp.${DOMAIN}"},
            "hooks": [
                {
                    "service": "chatwoot_chatwoot_app",
                    "description": "prepare chatwoot database",
                    "command": ["bundle", "exec", "rails", "db:chatwoot_prepare"],
                }
            ],
            "domains": ["chatwootapp.${DOMAIN}"],
        },
        {
            "name": "n8n",
            "depends_on": ["postgres", "redis"],
            "networks": ["general_network", "traefik_public"],
            "domains": ["n8napp.${DOMAIN}", "n8nwebhookapp.${DOMAIN}"],
        },
    ],
}


@dataclass
class DeploymentDefinition:
    """Units and cluster-wide resources of one deployment."""

    units: list[ServiceUnit]
    resources: list[ClusterResource] = field(default_factory=list)
    source: Path | None = None

    def unit(self, name: str) -> ServiceUnit:
        for unit in self.units:
            if unit.name == name:
                return unit
        raise KeyError(name)


def _str_list(data: dict[str, Any], key: str, where: str) -> tuple[str, ...]:
    value = data.get(key) or []
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ConfigError(f"{where}: '{key}' must be a list of strings")
    return tuple(value)


def _parse_flag(data: dict[str, Any], key: str, where: str, default: bool) -> bool:
    value = data.get(key, default)
    if not isinstance(value, bool):
        raise ConfigError(f"{where}: '{key}' must be true or false")
    return value


def _parse_probe(data: Any, where: str) -> ReadinessProbe | None:
    if data is None:
        return None
    if not isinstance(data, dict) or "endpoint" not in data:
        raise ConfigError(f"{where}: probe needs at least 'protocol' and 'endpoint'")
    try:
        return ReadinessProbe(
            protocol=str(data.get("protocol", "https")),
            endpoint=str(data["endpoint"]),
            expected=int(data["expected"]) if data.get("expected") is not None else None,
            command=_str_list(data, "command", where),
        )
    except ValueError as e:
        raise ConfigError(f"{where}: {e}") from e


def _parse_hook(data: Any, where: str) -> UnitHook:
    if not isinstance(data, dict) or "service" not in data or "command" not in data:
        raise ConfigError(f"{where}: hooks need 'service' and 'command'")
    env = data.get("env") or {}
    if not isinstance(env, dict):
        raise ConfigError(f"{where}: hook 'env' must be a mapping")
    return UnitHook(
        service=str(data["service"]),
        command=_str_list(data, "command", where),
        env=tuple((str(k), str(v)) for k, v in env.items()),
        description=str(data.get("description", "")),
    )


def _parse_secret(data: Any, where: str) -> SecretRef:
    if not isinstance(data, dict) or "name" not in data or "env" not in data:
        raise ConfigError(f"{where}: secrets need 'name' and 'env'")
    return SecretRef(str(data["name"]), str(data["env"]))


def _parse_unit(data: Any, stacks_dir: Path) -> ServiceUnit:
    if not isinstance(data, dict) or not data.get("name"):
        raise ConfigError("Every unit needs a 'name'")
    name = str(data["name"])
    where = f"unit {name}"
    template = Path(data.get("template") or f"{name}.yaml")
    if not template.is_absolute():
        template = stacks_dir / template

    return ServiceUnit(
        name=name,
        template=template,
        volumes=_str_list(data, "volumes", where),
        networks=_str_list(data, "networks", where),
        secrets=tuple(_parse_secret(s, where) for s in data.get("secrets") or []),
        probe=_parse_probe(data.get("probe"), where),
        depends_on=_str_list(data, "depends_on", where),
        domains=_str_list(data, "domains", where),
        hooks=tuple(_parse_hook(h, where) for h in data.get("hooks") or []),
        handoff=_parse_flag(data, "handoff", where, default=True),
    )


def parse_definition(
    data: dict[str, Any], stacks_dir: Path, source: Path | None = None
) -> DeploymentDefinition:
    """Build a DeploymentDefinition from its dict form.

    Raises:
        ConfigError: On malformed input.
    """
    if not isinstance(data, dict):
        raise ConfigError("Definition must be a mapping")

    resources_data = data.get("resources") or {}
    if not isinstance(resources_data, dict):
        raise ConfigError("'resources' must be a mapping")
    resources = [
        ClusterResource.network(n) for n in _str_list(resources_data, "networks", "resources")
    ]
    resources += [
        ClusterResource.volume(v) for v in _str_list(resources_data, "volumes", "resources")
    ]

    units_data = data.get("units")
    if not isinstance(units_data, list) or not units_data:
        raise ConfigError("Definition must declare at least one unit")

    return DeploymentDefinition(
        units=[_parse_unit(u, stacks_dir) for u in units_data],
        resources=resources,
        source=source,
    )


def load_definition(path: Path | None = None, stacks_dir: Path | None = None) -> DeploymentDefinition:
    """Load a definition from YAML, or the built-in default when ``path`` is None.

    Args:
        path: Definition YAML file.
        stacks_dir: Directory holding the stack templates. Defaults to the
            definition's ``stacks_dir`` key, then ``stacks/`` next to it.

    Raises:
        ConfigError: Unreadable or malformed definition.
    """
    if path is None:
        return parse_definition(DEFAULT_DEFINITION, stacks_dir or DEFAULT_STACKS_DIR)

    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except OSError as e:
        raise ConfigError(f"Cannot read definition {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if stacks_dir is None:
        configured = data.get("stacks_dir") if isinstance(data, dict) else None
        stacks_dir = Path(configured) if configured else DEFAULT_STACKS_DIR
        if not stacks_dir.is_absolute():
            stacks_dir = path.parent / stacks_dir

    return parse_definition(data, stacks_dir, source=path)
