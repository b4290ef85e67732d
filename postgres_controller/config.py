"""
Controller configuration

Options are resolved in three layers: built-in defaults, an optional YAML
configuration file, then environment variables. The environment always wins.
"""

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

import yaml

from .errors import ConfigError


SSL_MODES = ("disable", "allow", "prefer", "require", "verify-ca", "verify-full")

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def _cast(name: str, kind: type, value: Any) -> Any:
    if value is None:
        return None
    try:
        if kind is bool:
            return _parse_bool(value)
        if kind is int:
            return int(value)
        if kind is float:
            return float(value)
        return str(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"invalid value for {name}: {value!r} ({e})") from e


@dataclass
class Config:
    """Controller configuration loaded from a file and environment variables"""

    # PostgreSQL settings
    DB_HOST: str = "localhost"
    DB_PORT: int = 5432
    DB_NAME: str = "postgres"
    DB_USER: str = "postgres"
    DB_PASS: str = ""
    DB_SSL_MODE: str = "prefer"
    DB_CONNECT_TIMEOUT: int = 10

    # Connection pool settings
    DB_POOL_MIN_CONN: int = 1
    DB_POOL_MAX_CONN: int = 5
    DB_POOL_TIMEOUT: float = 30.0

    # PgBouncer auth hook
    PGBOUNCER_ROLE: str = "pgbouncer"
    PGBOUNCER_SCHEMA: str = "pgbouncer"

    # Connection details handed to clients through secrets
    SECRET_DB_HOST: Optional[str] = None
    SECRET_DB_PORT: Optional[int] = None
    SECRET_DB_SSL_MODE: Optional[str] = None

    # Kubernetes settings
    KUBECONFIG: Optional[str] = None
    KUBE_CONTEXT: Optional[str] = None
    NAMESPACE: str = ""
    APPLY_CRD: bool = False

    # Controller settings
    WORKERS: int = 4
    BACKOFF_MIN: float = 1.0
    BACKOFF_MAX: float = 300.0
    SYNC_INTERVAL: float = 300.0
    WATCH_TIMEOUT: int = 30
    READINESS_WINDOW: float = 60.0
    PROBE_INTERVAL: float = 15.0

    # Management API
    MANAGEMENT_ADDRESS: str = "127.0.0.1:8032"
    LOG_LEVEL: str = "INFO"

    # System roles which may never be claimed by a resource
    SYSTEM_ROLES: frozenset = field(default_factory=lambda: frozenset({
        'postgres', 'pg_monitor', 'pg_read_all_settings', 'pg_read_all_stats',
        'pg_stat_scan_tables', 'pg_read_server_files', 'pg_write_server_files',
        'pg_execute_server_program', 'pg_signal_backend', 'pg_database_owner',
        'pg_read_all_data', 'pg_write_all_data', 'pg_checkpoint',
        'rds_superuser', 'public',
    }))

    @classmethod
    def option_names(cls) -> Tuple[str, ...]:
        return tuple(f.name for f in fields(cls) if f.name != "SYSTEM_ROLES")

    @classmethod
    def load(cls, path: Optional[str] = None,
             environ: Optional[Mapping[str, str]] = None) -> "Config":
        """
        Build a configuration from defaults, a YAML file and the environment

        Args:
            path: Optional path to a YAML file whose keys are option names
                  (case-insensitive)
            environ: Environment mapping, defaults to os.environ

        Returns:
            A validated Config

        Raises:
            ConfigError: when the file is unreadable or a value is invalid
        """
        environ = os.environ if environ is None else environ
        types = {f.name: f.type for f in fields(cls)}
        values: Dict[str, Any] = {}

        if path:
            values.update(cls._read_file(Path(path), types))

        for name in cls.option_names():
            if name in environ and environ[name] != "":
                values[name] = environ[name]

        kwargs = {
            name: _cast(name, _base_type(types[name]), value)
            for name, value in values.items()
        }
        config = cls(**kwargs)
        config.validate()
        return config

    @classmethod
    def _read_file(cls, path: Path, types: Dict[str, Any]) -> Dict[str, Any]:
        try:
            with open(path, 'r') as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"unable to read configuration file {path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigError(f"configuration file {path} must contain a mapping")

        values = {}
        for key, value in data.items():
            name = str(key).upper().replace("-", "_")
            if name not in types or name == "SYSTEM_ROLES":
                raise ConfigError(f"unknown configuration option {key!r} in {path}")
            values[name] = value
        return values

    def validate(self):
        """Reject values the controller cannot run with"""
        self.DB_SSL_MODE = self.DB_SSL_MODE.lower()
        if self.DB_SSL_MODE not in SSL_MODES:
            raise ConfigError(
                f"invalid DB_SSL_MODE {self.DB_SSL_MODE!r}, expected one of {', '.join(SSL_MODES)}"
            )
        if self.SECRET_DB_SSL_MODE is not None:
            self.SECRET_DB_SSL_MODE = self.SECRET_DB_SSL_MODE.lower()
            if self.SECRET_DB_SSL_MODE not in SSL_MODES:
                raise ConfigError(f"invalid SECRET_DB_SSL_MODE {self.SECRET_DB_SSL_MODE!r}")

        self.LOG_LEVEL = self.LOG_LEVEL.upper()
        if self.LOG_LEVEL not in LOG_LEVELS:
            raise ConfigError(f"invalid LOG_LEVEL {self.LOG_LEVEL!r}")

        if not 0 < self.DB_PORT < 65536:
            raise ConfigError(f"invalid DB_PORT {self.DB_PORT}")
        if self.DB_POOL_MIN_CONN < 0 or self.DB_POOL_MAX_CONN < max(1, self.DB_POOL_MIN_CONN):
            raise ConfigError("DB_POOL_MAX_CONN must be at least 1 and not below DB_POOL_MIN_CONN")
        if self.WORKERS < 1:
            raise ConfigError("WORKERS must be at least 1")
        if self.BACKOFF_MIN <= 0 or self.BACKOFF_MAX < self.BACKOFF_MIN:
            raise ConfigError("BACKOFF_MIN must be positive and not above BACKOFF_MAX")

        self.management_bind()

    def management_bind(self) -> Tuple[str, int]:
        """Split MANAGEMENT_ADDRESS into host and port"""
        host, sep, port = self.MANAGEMENT_ADDRESS.rpartition(":")
        if not sep or not host:
            raise ConfigError(f"invalid MANAGEMENT_ADDRESS {self.MANAGEMENT_ADDRESS!r}")
        try:
            return host.strip("[]"), int(port)
        except ValueError as e:
            raise ConfigError(f"invalid MANAGEMENT_ADDRESS {self.MANAGEMENT_ADDRESS!r}") from e

    @property
    def client_host(self) -> str:
        return self.SECRET_DB_HOST or self.DB_HOST

    @property
    def client_port(self) -> int:
        return self.SECRET_DB_PORT or self.DB_PORT

    @property
    def client_ssl_mode(self) -> str:
        return self.SECRET_DB_SSL_MODE or self.DB_SSL_MODE

    def reserved_roles(self) -> frozenset:
        """Roles no resource may claim as its owner"""
        return self.SYSTEM_ROLES | {self.DB_USER, self.PGBOUNCER_ROLE}


def _base_type(annotation: Any) -> type:
    """Unwrap Optional[...] annotations to the concrete scalar type"""
    args = getattr(annotation, "__args__", None)
    if args:
        return next(a for a in args if a is not type(None))
    return annotation
