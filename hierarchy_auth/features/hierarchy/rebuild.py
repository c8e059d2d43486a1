"""
Bulk path maintenance: top-down rebuild and integrity checking.

The rebuild recomputes every materialized path from parent links, level by
level, so parents are always settled before their children. It is idempotent:
a second run with no intervening writes changes nothing.
"""
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from hierarchy_auth.features.hierarchy import paths
from hierarchy_auth.features.hierarchy.levels import LEVELS
from hierarchy_auth.features.hierarchy.reparent import PathChange
from hierarchy_auth.features.hierarchy.store import HierarchyStore, NodeRecord
from hierarchy_auth.utils import get_logger


log = get_logger(__name__)


@dataclass(frozen=True)
class NodeIssue:
    node_id: str
    entity_type: str
    error: str


@dataclass
class RebuildReport:
    processed: int = 0
    updated: int = 0
    errors: List[NodeIssue] = field(default_factory=list)
    changes: List[PathChange] = field(default_factory=list)
    dry_run: bool = False


@dataclass
class IntegrityReport:
    checked: int = 0
    invalid_paths: List[NodeIssue] = field(default_factory=list)
    depth_mismatches: List[NodeIssue] = field(default_factory=list)
    level_mismatches: List[NodeIssue] = field(default_factory=list)
    missing_parents: List[NodeIssue] = field(default_factory=list)
    prefix_mismatches: List[NodeIssue] = field(default_factory=list)
    circular_paths: List[NodeIssue] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not (
            self.invalid_paths or self.depth_mismatches or self.level_mismatches
            or self.missing_parents or self.prefix_mismatches or self.circular_paths
        )


def _issue(node: NodeRecord, error: str) -> NodeIssue:
    return NodeIssue(node_id=node.id, entity_type=node.entity_type.value, error=error)


def expected_path(node: NodeRecord, by_id: Dict[str, NodeRecord], rebuilt: Dict[str, str]) -> str:
    """
    Canonical path of ``node`` given already-rebuilt parent paths.

    Raises ValueError describing why the node cannot be placed.
    """
    if node.level != LEVELS[node.entity_type]:
        raise ValueError(f"level {node.level} does not match entity type {node.entity_type.value}")
    if node.level == 0:
        if node.parent_id is not None:
            raise ValueError("union must not have a parent")
        return paths.build(None, node.entity_type, node.id)

    if node.parent_id is None:
        raise ValueError(f"{node.entity_type.value} missing parent")
    parent = by_id.get(node.parent_id)
    if parent is None:
        raise ValueError(f"parent {node.parent_id} not found")
    if parent.level != node.level - 1:
        raise ValueError(f"parent {parent.id} is at level {parent.level}, expected {node.level - 1}")
    if parent.id not in rebuilt:
        raise ValueError(f"parent {parent.id} path could not be rebuilt")

    path = paths.build(rebuilt[parent.id], node.entity_type, node.id)
    if not paths.validate(path):
        raise ValueError(f"computed path {path!r} is invalid")
    return path


async def rebuild_all_paths(store: HierarchyStore, dry_run: bool = False) -> RebuildReport:
    """
    Recompute every node's path from its parent chain.

    Per-node problems are collected into the report instead of aborting the
    run. With ``dry_run`` no write is issued; the report lists what would change.
    """
    report = RebuildReport(dry_run=dry_run)

    async with store.unit_of_work() as uow:
        nodes = await uow.list_all()
        by_id = {node.id: node for node in nodes}
        rebuilt: Dict[str, str] = {}

        for node in sorted(nodes, key=lambda n: (n.level, n.path)):
            try:
                path = expected_path(node, by_id, rebuilt)
            except ValueError as exc:
                report.errors.append(_issue(node, str(exc)))
                continue

            rebuilt[node.id] = path
            if path != node.path:
                report.changes.append(PathChange(node.id, node.entity_type, node.path, path))
                if not dry_run:
                    await uow.set_path(node.id, path)
                report.updated += 1
            report.processed += 1

    log.info(
        "Path rebuild%s: processed=%d updated=%d errors=%d",
        " (dry run)" if dry_run else "", report.processed, report.updated, len(report.errors),
    )
    return report


async def check_integrity(store: HierarchyStore) -> IntegrityReport:
    """Report structural problems without changing anything."""
    report = IntegrityReport()
    nodes = await store.list_all()
    by_id = {node.id: node for node in nodes}

    for node in nodes:
        report.checked += 1
        if not paths.validate(node.path):
            report.invalid_paths.append(_issue(node, f"invalid path {node.path!r}"))
        if paths.depth(node.path) != node.level + 1:
            report.depth_mismatches.append(
                _issue(node, f"depth {paths.depth(node.path)} != level {node.level} + 1")
            )
        if node.level != LEVELS[node.entity_type]:
            report.level_mismatches.append(
                _issue(node, f"level {node.level} does not match entity type {node.entity_type.value}")
            )
        if paths.embeds(node.path, node.id):
            report.circular_paths.append(_issue(node, f"path {node.path!r} contains the node itself"))
        if paths.segments(node.path)[-1:] != [paths.encode_segment(node.entity_type, node.id)]:
            report.prefix_mismatches.append(_issue(node, "last path segment does not name the node"))

        if node.level == 0:
            continue
        parent: Optional[NodeRecord] = by_id.get(node.parent_id) if node.parent_id else None
        if parent is None:
            report.missing_parents.append(_issue(node, f"parent {node.parent_id} not found"))
            continue
        if parent.level != node.level - 1:
            report.level_mismatches.append(
                _issue(node, f"parent {parent.id} is at level {parent.level}")
            )
        if paths.parent(node.path) != parent.path:
            report.prefix_mismatches.append(
                _issue(node, f"path does not extend parent path {parent.path!r}")
            )

    log.info("Integrity check of %d nodes: %s", report.checked, "ok" if report.is_valid else "issues found")
    return report
