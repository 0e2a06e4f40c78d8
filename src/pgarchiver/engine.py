"""Registration and HBA reconciliation of an archiver node."""

from dataclasses import dataclass, replace
from enum import Enum

import structlog

from pgarchiver.config import ArchiverConfig
from pgarchiver.exceptions import ArchiverError, StateIntegrityError
from pgarchiver.monitor import MonitorClient
from pgarchiver.retry import retry_with_backoff
from pgarchiver.server import ServerControl
from pgarchiver.state import NodeState, StateStore, reconcile_state
from pgarchiver.synchronizer import grant_local_network_access
from pgarchiver.topology import TopologySnapshot

logger = structlog.get_logger(__name__)


class ReconcileStage(Enum):
    """Stages of a reconciliation run."""

    UNREGISTERED = "unregistered"
    REGISTERING = "registering"
    REGISTERED_PENDING_SYNC = "registered_pending_sync"
    SYNCHRONIZED = "synchronized"
    FAILED = "failed"


@dataclass
class ReconcileResult:
    """Outcome of one reconciliation run."""

    stage: ReconcileStage
    state: NodeState | None = None
    topology: TopologySnapshot | None = None
    reason: str | None = None
    retryable: bool = False

    @property
    def ok(self) -> bool:
        """Check whether the node is fully reconciled."""
        return self.stage is ReconcileStage.SYNCHRONIZED


class ReconciliationEngine:
    """Registers a node with the monitor and opens HBA access for it.

    Every stage is idempotent: running again after a crash or a failure
    resumes where the previous run stopped.
    """

    def __init__(
        self,
        config: ArchiverConfig,
        *,
        monitor: MonitorClient,
        store: StateStore,
        server: ServerControl,
    ) -> None:
        """Initialize reconciliation engine.

        Args:
            config: Node configuration
            monitor: Monitor client
            store: Store for the node state
            server: Local PostgreSQL server
        """
        self._config = config
        self._monitor = monitor
        self._store = store
        self._server = server
        self._stage = ReconcileStage.UNREGISTERED

    @property
    def stage(self) -> ReconcileStage:
        """Get the stage reached by the last run."""
        return self._stage

    def _enter(self, stage: ReconcileStage) -> None:
        logger.debug("Reconciliation stage", node=self._config.name, stage=stage.value)
        self._stage = stage

    async def reconcile(self) -> ReconcileResult:
        """Run one reconciliation pass.

        Errors are reported in the result rather than raised, flagged as
        retryable when another run may succeed without operator action.
        """
        state: NodeState | None = None
        topology: TopologySnapshot | None = None

        try:
            state = await self._store.load()

            if state is None or state.node_id is None:
                self._enter(ReconcileStage.UNREGISTERED)
                state = await self._register(state)
            else:
                self._enter(ReconcileStage.REGISTERED_PENDING_SYNC)
                state = await self._verify(state)

            topology = await self._monitor.fetch_topology(state.node_id)
            if not topology.contains(state.formation, state.group_id):
                raise StateIntegrityError(
                    f'Formation "{state.formation}" group {state.group_id} of node '
                    f'"{state.name}" is not registered at the monitor {state.monitor_uri}'
                )

            granted = await grant_local_network_access(
                self._server,
                ssl=self._config.ssl,
                database_type=self._config.hba_database_type,
                database=self._config.hba_database,
                username=self._config.hba_username,
                hostname=self._config.hostname,
                auth_method=self._config.auth_method,
                pgdata=self._config.offline_pgdata,
            )
            if not granted:
                return ReconcileResult(
                    stage=self._stage,
                    state=state,
                    topology=topology,
                    reason=f'Local network of "{self._config.hostname}" is unknown, access not granted',
                    retryable=True,
                )

            if state.stage != ReconcileStage.SYNCHRONIZED.value:
                synchronized = replace(state, stage=ReconcileStage.SYNCHRONIZED.value)
                await self._store.store(synchronized)
                state = synchronized
            self._enter(ReconcileStage.SYNCHRONIZED)
        except ArchiverError as e:
            logger.error(
                "Reconciliation failed",
                node=self._config.name,
                stage=self._stage.value,
                retryable=e.retryable,
                error=str(e),
            )
            self._stage = ReconcileStage.FAILED
            return ReconcileResult(
                stage=ReconcileStage.FAILED,
                state=state,
                topology=topology,
                reason=str(e),
                retryable=e.retryable,
            )

        logger.info("Node reconciled", node=state.name, node_id=state.node_id)
        return ReconcileResult(stage=ReconcileStage.SYNCHRONIZED, state=state, topology=topology)

    async def _register(self, state: NodeState | None) -> NodeState:
        """Register with the monitor and persist the assigned identity."""
        self._enter(ReconcileStage.REGISTERING)

        if state is None:
            state = NodeState(
                name=self._config.name,
                formation=self._config.formation,
                group_id=self._config.group_id,
                monitor_uri=self._config.monitor_uri,
            )

        identity = await self._monitor.register_node(state.name, state.formation, state.group_id)
        state, _ = reconcile_state(state, identity)

        state.stage = ReconcileStage.REGISTERED_PENDING_SYNC.value
        await self._store.store(state)
        self._enter(ReconcileStage.REGISTERED_PENDING_SYNC)
        return state

    async def _verify(self, state: NodeState) -> NodeState:
        """Compare the stored identity with the monitor's."""
        identity = await self._monitor.get_node(state.name)
        if identity is None:
            raise StateIntegrityError(
                f'Node "{state.name}" is registered locally with id {state.node_id}, '
                f"but the monitor at {state.monitor_uri} has no record of it"
            )

        state, changed = reconcile_state(state, identity)
        if changed:
            state.stage = ReconcileStage.REGISTERED_PENDING_SYNC.value
            await self._store.store(state)
        return state


class _RetryableResult(Exception):
    def __init__(self, result: ReconcileResult) -> None:
        self.result = result
        super().__init__(result.reason)


async def run_until_synchronized(
    engine: ReconciliationEngine,
    *,
    max_attempts: int = 5,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
) -> ReconcileResult:
    """Re-run reconciliation with backoff while failures are retryable.

    Returns:
        The first non-retryable result, or the last result once all
        attempts are used
    """

    async def attempt() -> ReconcileResult:
        result = await engine.reconcile()
        if result.retryable:
            raise _RetryableResult(result)
        return result

    try:
        return await retry_with_backoff(
            attempt,
            max_attempts=max_attempts,
            base_delay=base_delay,
            max_delay=max_delay,
            retry_on=lambda e: isinstance(e, _RetryableResult),
        )
    except _RetryableResult as e:
        return e.result
