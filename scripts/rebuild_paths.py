"""
Recompute every hierarchy path from the parent links.

Usage:
    uv run python -m scripts.rebuild_paths            # rewrite drifted paths
    uv run python -m scripts.rebuild_paths --dry-run  # report only
    uv run python -m scripts.rebuild_paths --verify   # integrity report only

Exits non-zero when errors are found.
"""
import argparse
import asyncio
import sys

from hierarchy_auth.core.database.engine import AsyncSessionLocal, engine, init_db
from hierarchy_auth.features.hierarchy.rebuild import check_integrity, rebuild_all_paths
from hierarchy_auth.features.hierarchy.store import SqlAlchemyHierarchyStore
from hierarchy_auth.utils import get_logger


log = get_logger(__name__)


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Rebuild materialized hierarchy paths")
    group = parser.add_mutually_exclusive_group()
    group.add_argument("--dry-run", action="store_true", help="compute changes without writing them")
    group.add_argument("--verify", action="store_true", help="only run the integrity check")
    return parser.parse_args(argv)


async def verify(store: SqlAlchemyHierarchyStore) -> int:
    report = await check_integrity(store)
    log.info(f"Checked {report.checked} nodes")
    for name in ("invalid_paths", "depth_mismatches", "level_mismatches",
                 "missing_parents", "prefix_mismatches", "circular_paths"):
        for issue in getattr(report, name):
            log.warning(f"{name}: {issue.entity_type} {issue.node_id}: {issue.error}")
    if report.is_valid:
        log.info("Hierarchy is consistent")
        return 0
    return 1


async def rebuild(store: SqlAlchemyHierarchyStore, dry_run: bool) -> int:
    report = await rebuild_all_paths(store, dry_run=dry_run)
    for change in report.changes:
        log.info(f"{change.entity_type.value} {change.node_id}: {change.old_path!r} -> {change.new_path!r}")
    for issue in report.errors:
        log.error(f"{issue.entity_type} {issue.node_id}: {issue.error}")
    verb = "would update" if dry_run else "updated"
    log.info(f"Processed {report.processed} nodes, {verb} {report.updated}, {len(report.errors)} errors")
    return 1 if report.errors else 0


async def main(argv=None) -> int:
    args = parse_args(argv)
    await init_db()
    store = SqlAlchemyHierarchyStore(AsyncSessionLocal)
    try:
        if args.verify:
            return await verify(store)
        return await rebuild(store, dry_run=args.dry_run)
    finally:
        await engine.dispose()


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
