"""Control surface of the local PostgreSQL server."""

import asyncio
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

import asyncpg
import structlog

from pgarchiver.exceptions import ServerControlError

logger = structlog.get_logger(__name__)


class ServerControl(ABC):
    """Abstract interface for the requests the agent sends to PostgreSQL."""

    @abstractmethod
    async def get_hba_file_path(self) -> Path:
        """Get the path of the HBA file the server uses."""
        ...

    @abstractmethod
    async def reload_configuration(self) -> None:
        """Ask the server to re-read its configuration files."""
        ...


class PostgresServer(ServerControl):
    """Connection to the local PostgreSQL server."""

    def __init__(self, dsn: str, *, timeout: float = 10.0) -> None:
        """Initialize server handle (does not connect yet).

        Args:
            dsn: libpq connection string or URI of the local server
            timeout: Connection and query timeout in seconds
        """
        self._dsn = dsn
        self._timeout = timeout
        self._conn: asyncpg.Connection | None = None

    @property
    def is_connected(self) -> bool:
        """Check if connected."""
        return self._conn is not None

    async def connect(self) -> None:
        """Establish connection to the server."""
        if self._conn is not None:
            return

        try:
            self._conn = await asyncpg.connect(self._dsn, timeout=self._timeout)
        except (TimeoutError, OSError, asyncpg.PostgresError) as e:
            raise ServerControlError(f"Failed to connect to local PostgreSQL: {e}") from e

    async def close(self) -> None:
        """Close the connection."""
        if self._conn is not None:
            await self._conn.close()
            self._conn = None

    async def __aenter__(self) -> "PostgresServer":
        await self.connect()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    async def _fetchval(self, sql: str) -> Any:
        await self.connect()
        assert self._conn is not None

        try:
            return await asyncio.wait_for(self._conn.fetchval(sql), timeout=self._timeout)
        except (TimeoutError, OSError, asyncpg.PostgresError, asyncpg.InterfaceError) as e:
            raise ServerControlError(f"Query {sql!r} failed on local PostgreSQL: {e}") from e

    async def get_hba_file_path(self) -> Path:
        """Get the path of the HBA file the server uses."""
        path = await self._fetchval("SHOW hba_file")
        if not path:
            raise ServerControlError("Failed to obtain the HBA file path from local PostgreSQL")
        return Path(path)

    async def reload_configuration(self) -> None:
        """Ask the server to re-read its configuration files."""
        reloaded = await self._fetchval("SELECT pg_reload_conf()")
        if not reloaded:
            raise ServerControlError("Failed to reload PostgreSQL configuration")
        logger.debug("Reloaded PostgreSQL configuration")
