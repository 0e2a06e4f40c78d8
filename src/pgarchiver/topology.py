"""Formations and groups an archiver node is registered into."""

from collections.abc import Iterable
from dataclasses import dataclass

from pgarchiver.exceptions import ValidationError

MAX_FORMATION_COUNT = 12
MAX_GROUP_COUNT = 12

# PostgreSQL identifiers are limited to NAMEDATALEN - 1 bytes
MAX_FORMATION_NAME_LENGTH = 63


@dataclass(frozen=True)
class NodeIdentity:
    """Identity the monitor assigned to a node."""

    node_id: int
    formation: str
    group_id: int


@dataclass(frozen=True)
class Formation:
    """A named set of replication groups."""

    name: str
    groups: tuple[int, ...] = ()


@dataclass(frozen=True)
class TopologySnapshot:
    """Formations registered at the monitor at one point in time."""

    formations: tuple[Formation, ...] = ()

    def find(self, name: str) -> Formation | None:
        """Get a formation by name."""
        for formation in self.formations:
            if formation.name == name:
                return formation
        return None

    def contains(self, formation: str, group_id: int) -> bool:
        """Check whether a group of a formation is part of the snapshot."""
        found = self.find(formation)
        return found is not None and group_id in found.groups


def validate_topology(snapshot: TopologySnapshot) -> None:
    """Check a snapshot against the monitor protocol's capacity limits.

    Raises:
        ValidationError: Too many formations or groups, a formation name is
            too long, or a formation or group appears twice
    """
    if len(snapshot.formations) > MAX_FORMATION_COUNT:
        raise ValidationError(
            f"Topology has {len(snapshot.formations)} formations, "
            f"at most {MAX_FORMATION_COUNT} are supported"
        )

    seen: set[str] = set()

    for formation in snapshot.formations:
        if len(formation.name.encode("utf-8")) > MAX_FORMATION_NAME_LENGTH:
            raise ValidationError(
                f'Formation name "{formation.name}" is longer than '
                f"{MAX_FORMATION_NAME_LENGTH} bytes"
            )

        if formation.name in seen:
            raise ValidationError(f'Formation "{formation.name}" appears more than once')
        seen.add(formation.name)

        if len(formation.groups) > MAX_GROUP_COUNT:
            raise ValidationError(
                f'Formation "{formation.name}" has {len(formation.groups)} groups, '
                f"at most {MAX_GROUP_COUNT} are supported"
            )

        if len(set(formation.groups)) != len(formation.groups):
            raise ValidationError(f'Formation "{formation.name}" has duplicate group ids')


def decode_topology(rows: Iterable[tuple[str, int]]) -> TopologySnapshot:
    """Build a validated snapshot from (formation, group_id) rows.

    Formations keep the order of their first appearance in rows.

    Raises:
        ValidationError: The decoded snapshot does not validate
    """
    groups: dict[str, list[int]] = {}
    for name, group_id in rows:
        groups.setdefault(name, []).append(int(group_id))

    snapshot = TopologySnapshot(
        formations=tuple(Formation(name, tuple(ids)) for name, ids in groups.items())
    )
    validate_topology(snapshot)
    return snapshot
