"""Calls to the pg_auto_failover monitor."""

import asyncio
from abc import ABC, abstractmethod
from typing import TypeVar
from collections.abc import Awaitable, Callable
from urllib.parse import urlsplit

import asyncpg
import structlog

from pgarchiver.exceptions import (
    MonitorRejectedError,
    MonitorTimeoutError,
    MonitorTransportError,
)
from pgarchiver.topology import NodeIdentity, TopologySnapshot, decode_topology

logger = structlog.get_logger(__name__)

T = TypeVar("T")

REGISTER_ARCHIVER_SQL = """
SELECT assigned_archiver_id, assigned_formation_id, assigned_group_id
  FROM pgautofailover.register_archiver($1, $2, $3)
"""

GET_ARCHIVER_SQL = """
SELECT archiverid, formationid, groupid
  FROM pgautofailover.archiver
 WHERE nodename = $1
"""

FETCH_TOPOLOGY_SQL = """
SELECT formationid, groupid
  FROM pgautofailover.archiver
 WHERE archiverid = $1
 ORDER BY formationid, groupid
"""


def redact_uri(uri: str) -> str:
    """Drop user and password from a connection URI for display."""
    parts = urlsplit(uri)
    if not parts.netloc:
        return uri
    host = parts.netloc.rpartition("@")[2]
    return f"{parts.scheme}://{host}{parts.path}"


class MonitorClient(ABC):
    """Abstract interface for the monitor's node registration API.

    Every call is safe to repeat with the same arguments.
    """

    @abstractmethod
    async def register_node(self, name: str, formation: str, group_id: int) -> NodeIdentity:
        """Register a node, or return its identity if already registered."""
        ...

    @abstractmethod
    async def get_node(self, name: str) -> NodeIdentity | None:
        """Get the identity of a registered node."""
        ...

    @abstractmethod
    async def fetch_topology(self, node_id: int) -> TopologySnapshot:
        """Get the formations and groups the node is registered in."""
        ...


class PostgresMonitor(MonitorClient):
    """Monitor reached through its PostgreSQL SQL API."""

    def __init__(self, uri: str, *, timeout: float = 10.0) -> None:
        """Initialize monitor client.

        Args:
            uri: Monitor connection URI
            timeout: Timeout in seconds for each call, connection included
        """
        self._uri = uri
        self._timeout = timeout

    @property
    def endpoint(self) -> str:
        """Get the monitor URI without credentials."""
        return redact_uri(self._uri)

    async def _call(
        self, operation: str, func: Callable[[asyncpg.Connection], Awaitable[T]]
    ) -> T:
        """Run func on a fresh monitor connection, mapping errors."""

        async def run() -> T:
            conn = await asyncpg.connect(self._uri)
            try:
                return await func(conn)
            finally:
                await conn.close()

        try:
            return await asyncio.wait_for(run(), timeout=self._timeout)
        except TimeoutError as e:
            raise MonitorTimeoutError(
                self.endpoint, f"{operation} timed out after {self._timeout}s"
            ) from e
        except (OSError, asyncpg.InterfaceError, asyncpg.PostgresConnectionError) as e:
            raise MonitorTransportError(self.endpoint, f"{operation} failed: {e}") from e
        except asyncpg.PostgresError as e:
            raise MonitorRejectedError(self.endpoint, f"{operation} was rejected: {e}") from e

    async def register_node(self, name: str, formation: str, group_id: int) -> NodeIdentity:
        """Register a node, or return its identity if already registered."""

        async def register(conn: asyncpg.Connection) -> asyncpg.Record | None:
            return await conn.fetchrow(REGISTER_ARCHIVER_SQL, name, formation, group_id)

        row = await self._call("register_archiver", register)
        if row is None:
            raise MonitorRejectedError(self.endpoint, f'Registration of "{name}" returned no row')

        identity = NodeIdentity(
            node_id=row["assigned_archiver_id"],
            formation=row["assigned_formation_id"],
            group_id=row["assigned_group_id"],
        )
        logger.info(
            "Registered archiver node",
            name=name,
            node_id=identity.node_id,
            formation=identity.formation,
            group_id=identity.group_id,
            monitor=self.endpoint,
        )
        return identity

    async def get_node(self, name: str) -> NodeIdentity | None:
        """Get the identity of a registered node."""

        async def fetch(conn: asyncpg.Connection) -> asyncpg.Record | None:
            return await conn.fetchrow(GET_ARCHIVER_SQL, name)

        row = await self._call("get_archiver", fetch)
        if row is None:
            return None
        return NodeIdentity(
            node_id=row["archiverid"],
            formation=row["formationid"],
            group_id=row["groupid"],
        )

    async def fetch_topology(self, node_id: int) -> TopologySnapshot:
        """Get the formations and groups the node is registered in."""

        async def fetch(conn: asyncpg.Connection) -> list[asyncpg.Record]:
            return await conn.fetch(FETCH_TOPOLOGY_SQL, node_id)

        rows = await self._call("fetch_topology", fetch)
        return decode_topology((row["formationid"], row["groupid"]) for row in rows)
