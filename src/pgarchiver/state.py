"""Durable local record of the node's monitor-assigned identity."""

import asyncio
import contextlib
import dataclasses
import fcntl
import json
import os
import tempfile
from abc import ABC, abstractmethod
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import structlog

from pgarchiver.exceptions import StateError, StateIntegrityError, ValidationError
from pgarchiver.topology import Formation, NodeIdentity, TopologySnapshot, validate_topology

logger = structlog.get_logger(__name__)


@dataclass
class NodeState:
    """Cached copy of what the monitor knows about this node."""

    name: str
    formation: str
    group_id: int
    monitor_uri: str
    node_id: int | None = None
    stage: str = "unregistered"

    def validate(self) -> None:
        """Check the formation and group fit the monitor protocol limits."""
        validate_topology(TopologySnapshot((Formation(self.formation, (self.group_id,)),)))
        if self.group_id < 0:
            raise ValidationError(f"Invalid group id {self.group_id}")


def reconcile_state(current: NodeState, fetched: NodeIdentity) -> tuple[NodeState, bool]:
    """Bring the local state in line with the monitor's view of this node.

    Args:
        current: Local state, updated in place
        fetched: Identity the monitor reports for this node

    Returns:
        (state, changed)

    Raises:
        StateIntegrityError: The local node id differs from the monitor's
    """
    if current.node_id is None:
        current.node_id = fetched.node_id
        current.formation = fetched.formation
        current.group_id = fetched.group_id
        return current, True

    if current.node_id != fetched.node_id:
        raise StateIntegrityError(
            f'Node "{current.name}" is registered locally with id {current.node_id}, '
            f"but the monitor at {current.monitor_uri} reports id {fetched.node_id}"
        )

    changed = False
    if current.formation != fetched.formation:
        logger.info(
            "Formation changed on the monitor",
            node_id=current.node_id,
            old=current.formation,
            new=fetched.formation,
        )
        current.formation = fetched.formation
        changed = True

    if current.group_id != fetched.group_id:
        logger.info(
            "Group changed on the monitor",
            node_id=current.node_id,
            old=current.group_id,
            new=fetched.group_id,
        )
        current.group_id = fetched.group_id
        changed = True

    return current, changed


class StateStore(ABC):
    """Abstract interface for persisting the node state."""

    @abstractmethod
    async def load(self) -> NodeState | None:
        """Get the stored state, None before first registration."""
        ...

    @abstractmethod
    async def store(self, state: NodeState) -> None:
        """Replace the stored state."""
        ...


class MemoryStateStore(StateStore):
    """In-memory state store."""

    def __init__(self, initial: NodeState | None = None) -> None:
        self._state = dataclasses.replace(initial) if initial is not None else None

    async def load(self) -> NodeState | None:
        """Get the stored state."""
        if self._state is None:
            return None
        return dataclasses.replace(self._state)

    async def store(self, state: NodeState) -> None:
        """Replace the stored state."""
        self._state = dataclasses.replace(state)


class FileStateStore(StateStore):
    """Node state kept as a JSON document on disk."""

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path)
        self._lock_path = self._path.with_name(self._path.name + ".lock")

    @property
    def path(self) -> Path:
        """Get the state file path."""
        return self._path

    @contextlib.contextmanager
    def _exclusive_lock(self) -> Iterator[None]:
        fd = os.open(self._lock_path, os.O_RDWR | os.O_CREAT, 0o600)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX)
            yield
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
            os.close(fd)

    async def load(self) -> NodeState | None:
        """Read the state file, None when it does not exist yet."""
        try:
            raw = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StateError(f"Failed to read state file {self._path}: {e}") from e

        try:
            data: dict[str, Any] = json.loads(raw)
            state = NodeState(
                name=data["name"],
                formation=data["formation"],
                group_id=int(data["group_id"]),
                monitor_uri=data["monitor_uri"],
                node_id=None if data.get("node_id") is None else int(data["node_id"]),
                stage=data.get("stage", "unregistered"),
            )
            state.validate()
        except (ValueError, KeyError, TypeError, ValidationError) as e:
            raise StateError(f"Invalid state file {self._path}: {e}") from e

        return state

    def _write(self, payload: str) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self._exclusive_lock():
            fd, tmp_name = tempfile.mkstemp(dir=self._path.parent, prefix=f".{self._path.name}.")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as tmp:
                    tmp.write(payload)
                    tmp.flush()
                    os.fsync(tmp.fileno())
                os.replace(tmp_name, self._path)
            except BaseException:
                with contextlib.suppress(FileNotFoundError):
                    os.unlink(tmp_name)
                raise

    async def store(self, state: NodeState) -> None:
        """Write the state file atomically, holding an exclusive lock.

        Waiting for the lock happens in a worker thread.
        """
        payload = json.dumps(dataclasses.asdict(state), indent=2, sort_keys=True) + "\n"

        try:
            await asyncio.to_thread(self._write, payload)
        except OSError as e:
            raise StateError(f"Failed to write state file {self._path}: {e}") from e

        logger.debug("Stored node state", path=str(self._path), node_id=state.node_id)
