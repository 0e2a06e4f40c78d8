"""Registration and pg_hba.conf reconciliation for pg_auto_failover archiver nodes."""

from pgarchiver.config import ArchiverConfig
from pgarchiver.engine import (
    ReconciliationEngine,
    ReconcileResult,
    ReconcileStage,
    run_until_synchronized,
)
from pgarchiver.exceptions import (
    ArchiverError,
    MonitorError,
    MonitorRejectedError,
    MonitorTimeoutError,
    MonitorTransportError,
    NetworkResolutionError,
    RuleFileError,
    RuleFileReadError,
    RuleFileWriteError,
    ServerControlError,
    StateError,
    StateIntegrityError,
    ValidationError,
)
from pgarchiver.hba import HBADatabaseType, HBARule, ensure_line, render_rule
from pgarchiver.monitor import MonitorClient, PostgresMonitor
from pgarchiver.server import PostgresServer, ServerControl
from pgarchiver.state import FileStateStore, MemoryStateStore, NodeState, StateStore
from pgarchiver.topology import Formation, NodeIdentity, TopologySnapshot

__all__ = [
    "reconcile",
    "ArchiverConfig",
    "ReconciliationEngine",
    "ReconcileResult",
    "ReconcileStage",
    "run_until_synchronized",
    "HBADatabaseType",
    "HBARule",
    "ensure_line",
    "render_rule",
    "MonitorClient",
    "PostgresMonitor",
    "ServerControl",
    "PostgresServer",
    "StateStore",
    "MemoryStateStore",
    "FileStateStore",
    "NodeState",
    "NodeIdentity",
    "Formation",
    "TopologySnapshot",
    "ArchiverError",
    "RuleFileError",
    "RuleFileReadError",
    "RuleFileWriteError",
    "NetworkResolutionError",
    "MonitorError",
    "MonitorTimeoutError",
    "MonitorTransportError",
    "MonitorRejectedError",
    "StateError",
    "StateIntegrityError",
    "ValidationError",
    "ServerControlError",
]

__version__ = "0.1.0"


async def reconcile(config: ArchiverConfig) -> ReconcileResult:
    """Run one reconciliation pass against the real monitor and server.

    Args:
        config: Node configuration

    Returns:
        The reconciliation result
    """
    monitor = PostgresMonitor(config.monitor_uri, timeout=config.timeout)
    store = FileStateStore(config.state_file)

    # connects on first use, never when config.offline_pgdata is set
    server = PostgresServer(config.pg_dsn, timeout=config.timeout)
    try:
        engine = ReconciliationEngine(config, monitor=monitor, store=store, server=server)
        return await engine.reconcile()
    finally:
        await server.close()
