"""
Principal, Role and role-assignment models for hierarchy-scoped RBAC.

A principal holds roles at specific nodes of the organization tree. The node
anchors the role: scoped permissions are evaluated relative to its path.
"""
from datetime import datetime
from typing import List
from sqlalchemy import String, Integer, Boolean, ForeignKey, Table, Column, JSON, Text, DateTime
from sqlalchemy.orm import Mapped, mapped_column, validates

from hierarchy_auth.core.database.base import Base, TimestampMixin, generate_ulid
from hierarchy_auth.features.permissions import tokens


# Principal-Node-Role relationship (principals hold roles at specific tree nodes)
role_assignments = Table(
    "role_assignments",
    Base.metadata,
    Column("principal_id", String(26), ForeignKey("principals.id", ondelete="CASCADE"), primary_key=True),
    Column("node_id", String(26), ForeignKey("hierarchy_nodes.id", ondelete="CASCADE"), primary_key=True, index=True),
    Column("role_id", String(26), ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
    Column("assigned_at", DateTime(timezone=True), nullable=False, default=datetime.now),
    Column("assigned_by_id", String(26), ForeignKey("principals.id"), nullable=True),
)


class Role(Base, TimestampMixin):
    """
    Role model.

    ``permissions`` holds token strings ("teams.manage:subordinate", "*", ...)
    and ``can_manage`` the hierarchy levels this role administers.
    """
    __tablename__ = "roles"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    name: Mapped[str] = mapped_column(String(50), unique=True, nullable=False, index=True)
    display_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    # 0 = union (highest) ... 4 = service (lowest)
    hierarchy_level: Mapped[int] = mapped_column(Integer, nullable=False)
    permissions: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
    can_manage: Mapped[List[int]] = mapped_column(JSON, nullable=False, default=list)

    is_system: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    @validates("permissions")
    def validate_permissions(self, _key, value):
        # Raises ValidationError on the first malformed token
        tokens.parse_many(value)
        return list(value)

    @validates("hierarchy_level")
    def validate_hierarchy_level(self, _key, value):
        if not 0 <= value <= 4:
            raise ValueError(f"hierarchy_level must be between 0 and 4, got {value}")
        return value

    def __repr__(self) -> str:
        return f"<Role(id={self.id}, name={self.name!r}, level={self.hierarchy_level})>"


class Principal(Base, TimestampMixin):
    """
    An actor that can be authorized: a user or a service account.
    """
    __tablename__ = "principals"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_super_admin: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    def __repr__(self) -> str:
        return f"<Principal(id={self.id}, email={self.email!r})>"
