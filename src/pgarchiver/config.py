"""Archiver node configuration."""

import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from pgarchiver.hba import HBADatabaseType

ENV_PREFIX = "PG_ARCHIVER_"

_TRUE_VALUES = frozenset({"1", "true", "yes", "on"})


@dataclass
class ArchiverConfig:
    """Settings of one archiver node."""

    name: str
    formation: str
    group_id: int
    hostname: str
    monitor_uri: str
    pg_dsn: str = "postgresql:///postgres"
    state_file: Path = Path("pg_archiver.state")

    # HBA rule granted to the local network
    hba_database_type: HBADatabaseType = HBADatabaseType.REPLICATION
    hba_database: str | None = None
    hba_username: str | None = None
    hba_auth_method: str = "trust"
    ssl: bool = False
    skip_pg_hba: bool = False

    # set when PostgreSQL is not running yet
    offline_pgdata: Path | None = None

    timeout: float = 10.0

    def __post_init__(self) -> None:
        for field_name in ("name", "formation", "hostname", "monitor_uri"):
            if not getattr(self, field_name):
                raise ValueError(f"{field_name} must not be empty")
        if self.group_id < 0:
            raise ValueError(f"group_id must be non-negative, got {self.group_id}")
        if self.timeout <= 0:
            raise ValueError(f"timeout must be positive, got {self.timeout}")
        if self.hba_database_type is HBADatabaseType.DBNAME and not self.hba_database:
            raise ValueError("hba_database is required when hba_database_type is DBNAME")

        self.state_file = Path(self.state_file)
        if self.offline_pgdata is not None:
            self.offline_pgdata = Path(self.offline_pgdata)

    @property
    def auth_method(self) -> str:
        """Get the HBA authentication method, "skip" with --skip-pg-hba."""
        return "skip" if self.skip_pg_hba else self.hba_auth_method

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "ArchiverConfig":
        """Create configuration from PG_ARCHIVER_* environment variables.

        NAME, FORMATION, GROUP, HOSTNAME and MONITOR are required.
        """
        env = os.environ if environ is None else environ

        def get(key: str, default: str | None = None) -> str | None:
            return env.get(ENV_PREFIX + key, default)

        def require(key: str) -> str:
            value = get(key)
            if not value:
                raise ValueError(f"{ENV_PREFIX}{key} is not set")
            return value

        def flag(key: str) -> bool:
            return (get(key) or "").strip().lower() in _TRUE_VALUES

        pgdata = get("PGDATA")

        return cls(
            name=require("NAME"),
            formation=require("FORMATION"),
            group_id=int(require("GROUP")),
            hostname=require("HOSTNAME"),
            monitor_uri=require("MONITOR"),
            pg_dsn=get("PG_DSN") or cls.pg_dsn,
            state_file=Path(get("STATE_FILE") or cls.state_file),
            hba_database_type=HBADatabaseType(get("HBA_DATABASE_TYPE", "replication")),
            hba_database=get("HBA_DATABASE"),
            hba_username=get("HBA_USERNAME"),
            hba_auth_method=get("AUTH_METHOD") or cls.hba_auth_method,
            ssl=flag("SSL"),
            skip_pg_hba=flag("SKIP_PG_HBA"),
            offline_pgdata=Path(pgdata) if pgdata else None,
            timeout=float(get("TIMEOUT") or cls.timeout),
        )
