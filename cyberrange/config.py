#!/usr/bin/env python3
"""
Configuration for the cyber range orchestration engine.

Process-level settings (SECRET_KEY, database URI) are read from the
environment at import time. Orchestration settings live in LabsConfig,
an immutable struct built once per application and handed to every
service at construction time.

Environment variables:
- DOCKER_LAB_DRIVER: local_docker (default), fake, cluster
- DOCKER_LAB_RUNTIME_ROOT: where per-instance compose workdirs are written
- DOCKER_LAB_PORT_RANGE_START / DOCKER_LAB_PORT_RANGE_END: host port pool
- CYBERRANGE_PUBLIC_PORT_MODE: direct (default) or proxy
- CYBERRANGE_PUBLIC_HOST / CYBERRANGE_PUBLIC_BASE_URL: public endpoint
- CYBERRANGE_TRUST_USER_HEADER: accept X-User-Id from a trusted gateway (default off)
"""

import os
from dataclasses import dataclass, fields, replace
from typing import Any, Mapping, Optional

# ============================================================================
# Flask SECRET_KEY (Development default provided, change in production!)
# ============================================================================

SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret-key-change-in-production")

# Warn if using default secret key
if SECRET_KEY == "dev-secret-key-change-in-production":
    import warnings
    warnings.warn(
        "Using default SECRET_KEY! This is INSECURE for production.\n"
        "Set SECRET_KEY in .env file or run: export SECRET_KEY=$(openssl rand -hex 32)",
        RuntimeWarning,
        stacklevel=2
    )

# Optional database override (defaults to SQLite next to the package)
DATABASE_URI = os.getenv("CYBERRANGE_DB_URI")

DRIVER_LOCAL_DOCKER = "local_docker"
DRIVER_FAKE = "fake"
DRIVER_CLUSTER = "cluster"

PUBLIC_MODE_DIRECT = "direct"
PUBLIC_MODE_PROXY = "proxy"


def _env_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("true", "1", "yes", "on")


def _env_int(value: Any, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


# Maps LabsConfig fields to the environment / app.config keys they are read from
_KEYS = {
    'driver': 'DOCKER_LAB_DRIVER',
    'runtime_root': 'DOCKER_LAB_RUNTIME_ROOT',
    'port_start': 'DOCKER_LAB_PORT_RANGE_START',
    'port_end': 'DOCKER_LAB_PORT_RANGE_END',
    'probe_host_ports': 'DOCKER_LAB_PROBE_PORTS',
    'max_ttl_minutes': 'DOCKER_LAB_MAX_TTL_MINUTES',
    'compose_timeout_seconds': 'DOCKER_LAB_COMPOSE_TIMEOUT_SECONDS',
    'preflight_timeout_seconds': 'DOCKER_LAB_PREFLIGHT_TIMEOUT_SECONDS',
    'default_memory_limit': 'DOCKER_LAB_DEFAULT_MEMORY_LIMIT',
    'default_cpu_limit': 'DOCKER_LAB_DEFAULT_CPU_LIMIT',
    'fallback_host': 'DOCKER_LAB_HOST',
    'docker_host': 'DOCKER_HOST',
    'public_mode': 'CYBERRANGE_PUBLIC_PORT_MODE',
    'public_host': 'CYBERRANGE_PUBLIC_HOST',
    'public_scheme': 'CYBERRANGE_PUBLIC_SCHEME',
    'public_base_url': 'CYBERRANGE_PUBLIC_BASE_URL',
    'public_proxy_prefix': 'CYBERRANGE_PUBLIC_PROXY_PREFIX',
    'allowed_port_range': 'CYBERRANGE_ALLOWED_PORT_RANGE',
    'app_url': 'APP_URL',
    'preflight_on_activate': 'LABS_PREFLIGHT_ON_ACTIVATE',
    'sweeper_enabled': 'LABS_SWEEPER_ENABLED',
    'sweeper_interval_seconds': 'LABS_SWEEPER_INTERVAL_SECONDS',
    'trust_user_header': 'CYBERRANGE_TRUST_USER_HEADER',
}


@dataclass(frozen=True)
class LabsConfig:
    """Orchestration settings injected into each service."""
    driver: str = DRIVER_LOCAL_DOCKER
    runtime_root: str = "/var/lib/cyberrange/instances"
    port_start: int = 20000
    port_end: int = 40000
    probe_host_ports: bool = True
    max_ttl_minutes: int = 120
    compose_timeout_seconds: int = 30
    preflight_timeout_seconds: int = 8
    default_memory_limit: str = "512m"
    default_cpu_limit: str = "0.5"
    fallback_host: str = "localhost"
    docker_host: str = "unix:///var/run/docker.sock"
    public_mode: str = PUBLIC_MODE_DIRECT
    public_host: str = ""
    public_scheme: str = "http"
    public_base_url: str = ""
    public_proxy_prefix: str = "/lab"
    allowed_port_range: str = ""
    app_url: str = ""
    preflight_on_activate: bool = True
    sweeper_enabled: bool = False
    sweeper_interval_seconds: int = 60
    # Only enable behind a gateway that strips client-supplied X-User-Id
    trust_user_header: bool = False

    def __post_init__(self):
        # Inverted ranges are accepted and normalized
        if self.port_end < self.port_start:
            start, end = self.port_end, self.port_start
            object.__setattr__(self, 'port_start', start)
            object.__setattr__(self, 'port_end', end)

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any], base: Optional["LabsConfig"] = None) -> "LabsConfig":
        """Build a config from a mapping keyed by env var names.

        Keys missing from ``values`` keep the value from ``base`` (or the
        dataclass default).
        """
        base = base or cls()
        overrides = {}
        for field in fields(cls):
            key = _KEYS[field.name]
            if key not in values:
                continue
            raw = values[key]
            current = getattr(base, field.name)
            if isinstance(current, bool):
                overrides[field.name] = _env_bool(raw, current)
            elif isinstance(current, int):
                overrides[field.name] = _env_int(raw, current)
            else:
                overrides[field.name] = "" if raw is None else str(raw).strip()
        return replace(base, **overrides)

    @classmethod
    def from_env(cls) -> "LabsConfig":
        """Build a config from the process environment."""
        return cls.from_mapping(os.environ)

    @property
    def port_range(self) -> range:
        return range(self.port_start, self.port_end + 1)
