"""Pytest configuration for pg-archiver tests."""

from collections.abc import Iterator
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from pgarchiver.config import ArchiverConfig
from pgarchiver.monitor import MonitorClient
from pgarchiver.topology import NodeIdentity, TopologySnapshot, decode_topology


class FakeMonitor(MonitorClient):
    """In-memory monitor keeping one registration per node name.

    `extra_groups` are reported in every node's topology.
    """

    def __init__(self) -> None:
        self.registrations: dict[str, NodeIdentity] = {}
        self.register_calls = 0
        self.extra_groups: list[tuple[str, int]] = []
        self._next_id = 1

    async def register_node(self, name: str, formation: str, group_id: int) -> NodeIdentity:
        self.register_calls += 1
        if name not in self.registrations:
            self.registrations[name] = NodeIdentity(self._next_id, formation, group_id)
            self._next_id += 1
        return self.registrations[name]

    async def get_node(self, name: str) -> NodeIdentity | None:
        return self.registrations.get(name)

    async def fetch_topology(self, node_id: int) -> TopologySnapshot:
        rows = {(i.formation, i.group_id) for i in self.registrations.values() if i.node_id == node_id}
        rows.update(self.extra_groups)
        return decode_topology(sorted(rows))


@pytest.fixture
def fake_monitor() -> FakeMonitor:
    return FakeMonitor()


@pytest.fixture
def hba_file(tmp_path: Path) -> Path:
    """Create a pg_hba.conf with the usual local rules."""
    path = tmp_path / "pg_hba.conf"
    path.write_text(
        "# TYPE  DATABASE        USER            ADDRESS                 METHOD\n"
        "local   all             all                                     trust\n"
        "host    all             all             127.0.0.1/32            trust\n"
    )
    return path


@pytest.fixture
def mock_server(hba_file: Path) -> MagicMock:
    """Create a mock local server pointing at hba_file."""
    server = MagicMock()
    server.get_hba_file_path = AsyncMock(return_value=hba_file)
    server.reload_configuration = AsyncMock()
    return server


@pytest.fixture
def local_network() -> Iterator[None]:
    """Pretend the node's hostname lives on 10.0.0.0/24."""
    with (
        patch(
            "pgarchiver.synchronizer.find_hostname_local_address",
            return_value="10.0.0.5",
        ),
        patch("pgarchiver.synchronizer.fetch_local_cidr", return_value="10.0.0.0/24"),
    ):
        yield


@pytest.fixture
def config(tmp_path: Path) -> ArchiverConfig:
    return ArchiverConfig(
        name="archiver-1",
        formation="default",
        group_id=0,
        hostname="archiver-1.example.com",
        monitor_uri="postgresql://autoctl_node@monitor:5432/pg_auto_failover",
        state_file=tmp_path / "archiver.state",
    )
