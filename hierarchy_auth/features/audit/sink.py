"""
Audit sinks for structural changes.

From the hierarchy core's perspective emitting an event is fire-and-forget:
the move has already committed, so a failing sink is logged and never
propagated back to the caller.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from hierarchy_auth.features.audit.models import AuditLog
from hierarchy_auth.utils import get_logger


log = get_logger(__name__)

ENTITY_MOVED = "hierarchy.move"


@dataclass(frozen=True)
class EntityMovedEvent:
    actor_id: Optional[str]
    entity_type: str
    entity_id: str
    old_parent_id: Optional[str]
    new_parent_id: str
    old_path: str
    new_path: str
    affected: List[Dict[str, str]] = field(default_factory=list)
    reason: Optional[str] = None

    def details(self) -> Dict[str, Any]:
        return {
            "old_parent_id": self.old_parent_id,
            "new_parent_id": self.new_parent_id,
            "old_path": self.old_path,
            "new_path": self.new_path,
            "affected_count": len(self.affected),
            "affected": self.affected,
            "reason": self.reason,
        }


class AuditSink(Protocol):
    async def entity_moved(self, event: EntityMovedEvent) -> None: ...


class LoggingAuditSink:
    """Writes events to the application log only."""

    async def entity_moved(self, event: EntityMovedEvent) -> None:
        log.info(
            f"Audit: actor={event.actor_id} action={ENTITY_MOVED} "
            f"resource={event.entity_type}:{event.entity_id} {event.old_path!r} -> {event.new_path!r}"
        )


class DatabaseAuditSink:
    """Persists events to the audit_logs table in its own transaction."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def entity_moved(self, event: EntityMovedEvent) -> None:
        async with self._session_factory() as session:
            session.add(AuditLog(
                principal_id=event.actor_id,
                action=ENTITY_MOVED,
                resource_type=event.entity_type,
                resource_id=event.entity_id,
                details=event.details(),
            ))
            await session.commit()
        log.info(
            f"Audit: actor={event.actor_id} action={ENTITY_MOVED} "
            f"resource={event.entity_type}:{event.entity_id}"
        )


async def emit(sink: Optional[AuditSink], event: EntityMovedEvent) -> None:
    """Deliver ``event``; sink failures are logged, not raised."""
    if sink is None:
        return
    try:
        await sink.entity_moved(event)
    except Exception:
        log.exception("Audit sink failed for move of %s %s", event.entity_type, event.entity_id)
