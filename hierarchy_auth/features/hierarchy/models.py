"""
Organization tree model.

All five node types (union, conference, church, team, service) share one
table. Each row stores its materialized path so subtree queries are a single
prefix match instead of a recursive walk.
"""
from sqlalchemy import String, Integer, ForeignKey, Index, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column

from hierarchy_auth.core.database.base import Base, TimestampMixin, generate_ulid
from hierarchy_auth.features.hierarchy.levels import EntityType


class HierarchyNode(Base, TimestampMixin):
    """
    A node of the organization tree.

    ``version`` is bumped on every path write and guards moves against
    concurrent modification.
    """
    __tablename__ = "hierarchy_nodes"

    # Primary key using ULID
    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    entity_type: Mapped[EntityType] = mapped_column(
        SQLEnum(EntityType, values_callable=lambda e: [member.value for member in e]),
        nullable=False,
        index=True,
    )
    level: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)

    # Tree position; parent is null only for unions
    parent_id: Mapped[str | None] = mapped_column(
        String(26),
        ForeignKey("hierarchy_nodes.id", ondelete="RESTRICT"),
        nullable=True,
        index=True,
    )
    path: Mapped[str] = mapped_column(String(512), nullable=False, unique=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __table_args__ = (
        Index("ix_hierarchy_nodes_level_path", "level", "path"),
    )

    def __repr__(self) -> str:
        return f"<HierarchyNode(id={self.id}, type={self.entity_type.value}, path={self.path!r})>"
