from __future__ import annotations

import json
import logging
import os
import re
import shlex
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

from .errors import ConfigError

log = logging.getLogger(__name__)

DEFAULT_PORT = 8000
DEFAULT_BRIDGE = "npx -y supergateway"
RESERVED_NAMES = frozenset({"health"})

_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}")
_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


def expand_env_vars(value: Any, environ: Mapping[str, str] | None = None) -> Any:
    """Recursively substitute ``${VAR}`` and ``${VAR:-default}`` placeholders.

    Unset variables without a default keep their placeholder and log a
    warning. Dicts and lists are walked; other types are returned as-is.

        ${PROJECT_REF}           -> value of PROJECT_REF
        ${LOG_LEVEL:-info}       -> value of LOG_LEVEL, or "info" if unset/empty
    """
    env = os.environ if environ is None else environ

    if isinstance(value, str):
        def _sub(match: re.Match[str]) -> str:
            name, default = match.group(1), match.group(2)
            current = env.get(name)
            if current:
                return current
            if default is not None:
                return default
            if current is None:
                log.warning("Environment variable '%s' not set, keeping placeholder", name)
                return match.group(0)
            return current

        return _VAR_PATTERN.sub(_sub, value)
    if isinstance(value, dict):
        return {k: expand_env_vars(v, env) for k, v in value.items()}
    if isinstance(value, list):
        return [expand_env_vars(v, env) for v in value]
    return value


@dataclass(frozen=True)
class ServerConfig:
    """One backend: the command that starts it and the local port it serves on."""

    name: str
    port: int
    command: str
    args: tuple[str, ...] = ()
    env: Mapping[str, str] = field(default_factory=dict)
    ready_pattern: str | None = None

    @property
    def command_line(self) -> str:
        return shlex.join([self.command, *self.args])


@dataclass(frozen=True)
class GatewayConfig:
    servers: tuple[ServerConfig, ...]
    host: str = "0.0.0.0"
    port: int = DEFAULT_PORT
    name: str = "stdio-gateway"
    cors_origin: str = "*"
    fail_fast: bool = False
    ready_max_attempts: int = 60
    ready_interval: float = 1.0
    ready_timeout: float = 1.0
    shutdown_grace: float = 2.0
    keep_alive_timeout: int = 86400
    access_log: bool = False

    def __post_init__(self) -> None:
        validate_servers(self.servers)
        for server in self.servers:
            if self.port and server.port == self.port:
                raise ConfigError(
                    f"Server '{server.name}': port {server.port} is the gateway's own port"
                )

    def with_overrides(self, **overrides: Any) -> GatewayConfig:
        """Return a copy with every non-None override applied."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})

    @classmethod
    def from_env(
        cls,
        env_path: str | Path | None = None,
        config_path: str | Path | None = None,
    ) -> GatewayConfig:
        load_dotenv(env_path)

        port = _int_env("PORT", DEFAULT_PORT)
        base_port = _int_env("BACKEND_BASE_PORT", port + 100)
        bridge = os.getenv("BRIDGE_COMMAND", DEFAULT_BRIDGE)

        config_path = config_path or os.getenv("GATEWAY_CONFIG")
        if config_path:
            entries = load_yaml_servers(config_path)
        elif os.getenv("GATEWAY_SERVERS"):
            try:
                raw = json.loads(os.environ["GATEWAY_SERVERS"])
            except json.JSONDecodeError as exc:
                raise ConfigError(f"GATEWAY_SERVERS is not valid JSON: {exc}") from exc
            entries = _servers_section(expand_env_vars(raw))
        else:
            entries = _legacy_supabase_entries()

        servers = parse_servers(entries, base_port=base_port, bridge=bridge)
        if not servers:
            raise ConfigError(
                "No servers configured (set GATEWAY_CONFIG, GATEWAY_SERVERS "
                "or SUPABASE_PROJECT_REF)"
            )

        return cls(
            servers=servers,
            host=os.getenv("HOST", "0.0.0.0"),
            port=port,
            name=os.getenv("GATEWAY_NAME", "stdio-gateway"),
            cors_origin=os.getenv("CORS_ORIGIN", "*"),
            fail_fast=_bool_env("GATEWAY_FAIL_FAST"),
            ready_max_attempts=_int_env("READY_MAX_ATTEMPTS", 60),
            ready_interval=_float_env("READY_INTERVAL", 1.0),
            ready_timeout=_float_env("READY_TIMEOUT", 1.0),
            shutdown_grace=_float_env("SHUTDOWN_GRACE", 2.0),
            keep_alive_timeout=_int_env("KEEP_ALIVE_TIMEOUT", 86400),
            access_log=_bool_env("ACCESS_LOG"),
        )


def load_yaml_servers(path: str | Path) -> dict[str, Any]:
    """Read the ``servers`` mapping from a YAML file, with env substitution."""
    path = Path(path)
    if not path.is_file():
        raise ConfigError(f"Config file not found: {path}")
    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc
    return _servers_section(expand_env_vars(data))


def parse_servers(
    entries: Mapping[str, Any],
    *,
    base_port: int,
    bridge: str = DEFAULT_BRIDGE,
) -> tuple[ServerConfig, ...]:
    """Turn a ``{name: entry}`` mapping into ServerConfigs.

    An entry either gives ``stdio`` (a command line run behind the bridge)
    or ``command``/``args``. Missing ports are assigned ``base_port + index``.
    """
    servers = []
    for index, (name, entry) in enumerate(entries.items()):
        if not isinstance(entry, Mapping):
            raise ConfigError(f"Server '{name}': entry must be a mapping")
        try:
            port = int(entry.get("port", base_port + index))
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"Server '{name}': invalid port {entry.get('port')!r}") from exc

        env = {str(k): str(v) for k, v in (entry.get("env") or {}).items()}

        if "stdio" in entry:
            bridge_argv = shlex.split(bridge)
            command = bridge_argv[0]
            args = (
                *bridge_argv[1:],
                "--stdio", str(entry["stdio"]),
                "--port", str(port),
                "--logLevel", "info",
            )
        elif "command" in entry:
            command = str(entry["command"])
            args = tuple(str(a) for a in entry.get("args") or ())
        else:
            raise ConfigError(f"Server '{name}': needs either 'stdio' or 'command'")

        servers.append(ServerConfig(
            name=str(name),
            port=port,
            command=command,
            args=args,
            env=env,
            ready_pattern=entry.get("ready_pattern"),
        ))
    return tuple(servers)


def validate_servers(servers: tuple[ServerConfig, ...]) -> None:
    names: set[str] = set()
    ports: set[int] = set()
    for server in servers:
        if not server.name or not _NAME_PATTERN.match(server.name):
            raise ConfigError(f"Invalid server name: {server.name!r}")
        if server.name in RESERVED_NAMES:
            raise ConfigError(f"Server name '{server.name}' is reserved")
        if server.name in names:
            raise ConfigError(f"Duplicate server name: {server.name}")
        if server.port in ports:
            raise ConfigError(f"Port {server.port} assigned to more than one server")
        if server.ready_pattern is not None:
            try:
                re.compile(server.ready_pattern)
            except re.error as exc:
                raise ConfigError(f"Server '{server.name}': bad ready_pattern: {exc}") from exc
        names.add(server.name)
        ports.add(server.port)


def _servers_section(data: Any) -> dict[str, Any]:
    servers = data.get("servers") if isinstance(data, Mapping) else None
    if not isinstance(servers, Mapping):
        raise ConfigError("Config must contain a 'servers' mapping")
    return dict(servers)


def _legacy_supabase_entries() -> dict[str, Any]:
    """Single Supabase server configured from SUPABASE_* variables."""
    ref = os.getenv("SUPABASE_PROJECT_REF", "")
    if not ref:
        return {}
    token = os.getenv("SUPABASE_ACCESS_TOKEN", "")
    if not token:
        log.warning("SUPABASE_ACCESS_TOKEN is not set")
    return {
        "supabase": {
            "stdio": f"npx -y @supabase/mcp-server-supabase --read-only --project-ref={ref}",
            "env": {"SUPABASE_ACCESS_TOKEN": token},
        }
    }


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from exc


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from exc


def _bool_env(name: str) -> bool:
    return os.getenv(name, "").lower() in ("1", "true", "yes")
