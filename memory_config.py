"""
memory_config.py — Server settings.

Defaults, overlaid by an optional YAML file (memory-server.yaml next to this
module, or the path in MEMORY_CONFIG), overlaid by MEMORY_* environment
variables.
"""

import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Mapping

import yaml

from oauth_stores import REFRESH_TOKEN_TTL

DEFAULT_CONFIG_PATH = Path(__file__).parent / "memory-server.yaml"


@dataclass
class ServerSettings:
    issuer_url: str = "http://localhost:8787"
    jwt_secret: str | None = None
    database_path: str = "~/.memory-server/memory.db"
    access_token_ttl: int = 3600
    refresh_token_ttl: int = REFRESH_TOKEN_TTL
    resource_path: str = "/mcp"
    registration_secret: str | None = None
    revoke_family_on_reuse: bool = True
    rate_limit_max_requests: int = 30
    rate_limit_window: int = 60
    trust_cf_connecting_ip: bool = False
    audit_log_path: str = "~/.memory-server/audit.log"

    def __post_init__(self) -> None:
        self.issuer_url = self.issuer_url.rstrip("/")


ENV_VARS = {
    "MEMORY_ISSUER_URL": "issuer_url",
    "MEMORY_JWT_SECRET": "jwt_secret",
    "MEMORY_DB_PATH": "database_path",
    "MEMORY_ACCESS_TOKEN_TTL": "access_token_ttl",
    "MEMORY_REFRESH_TOKEN_TTL": "refresh_token_ttl",
    "MEMORY_RESOURCE_PATH": "resource_path",
    "MEMORY_REGISTRATION_SECRET": "registration_secret",
    "MEMORY_REVOKE_FAMILY_ON_REUSE": "revoke_family_on_reuse",
    "MEMORY_RATE_LIMIT": "rate_limit_max_requests",
    "MEMORY_RATE_WINDOW": "rate_limit_window",
    "MEMORY_TRUST_CF_CONNECTING_IP": "trust_cf_connecting_ip",
    "MEMORY_AUDIT_LOG": "audit_log_path",
}

_TYPES = {f.name: f.type for f in fields(ServerSettings)}


def _coerce(name: str, value, source: str):
    expected = _TYPES[name]
    if expected is int:
        try:
            return int(value)
        except (TypeError, ValueError):
            raise SystemExit(f"Invalid integer for {name} in {source}: {value!r}")
    if expected is bool:
        if isinstance(value, bool):
            return value
        return str(value).strip().lower() in ("1", "true", "yes", "on")
    return None if value is None else str(value)


def _load_yaml(config_path: Path) -> dict:
    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}
    if not isinstance(raw, dict):
        raise SystemExit(f"Invalid config: expected a mapping in {config_path}")
    unknown = set(raw) - set(_TYPES)
    if unknown:
        raise SystemExit(
            f"Unknown settings in {config_path}: {', '.join(sorted(unknown))}. "
            f"Valid options: {', '.join(sorted(_TYPES))}"
        )
    return {k: _coerce(k, v, str(config_path)) for k, v in raw.items()}


def load_settings(
    config_path: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> ServerSettings:
    """Build settings from defaults, the YAML file and the environment."""
    environ = os.environ if environ is None else environ
    if config_path is None and environ.get("MEMORY_CONFIG"):
        config_path = Path(environ["MEMORY_CONFIG"])

    values: dict = {}
    if config_path is not None:
        if not config_path.exists():
            raise SystemExit(f"Config not found: {config_path}")
        values.update(_load_yaml(config_path))
    elif DEFAULT_CONFIG_PATH.exists():
        values.update(_load_yaml(DEFAULT_CONFIG_PATH))

    for var, name in ENV_VARS.items():
        if var in environ and environ[var] != "":
            values[name] = _coerce(name, environ[var], var)

    return ServerSettings(**values)
