"""
Fixed five-level rank table for the organization tree.

union=0 is the highest authority, service=4 is the leaf. Lower numbers manage
higher numbers. Level -1 denotes the super-admin, who sits above every union.
"""
import enum
from typing import Dict, List, Optional

from hierarchy_auth.core.exceptions import ValidationError
from hierarchy_auth.features.hierarchy import paths


SUPER_ADMIN_LEVEL = -1
MAX_LEVEL = 4


class EntityType(str, enum.Enum):
    """Node types of the organization tree, in rank order."""
    UNION = "union"
    CONFERENCE = "conference"
    CHURCH = "church"
    TEAM = "team"
    SERVICE = "service"


LEVELS: Dict[EntityType, int] = {
    EntityType.UNION: 0,
    EntityType.CONFERENCE: 1,
    EntityType.CHURCH: 2,
    EntityType.TEAM: 3,
    EntityType.SERVICE: 4,
}

TYPES_BY_LEVEL: Dict[int, EntityType] = {level: entity_type for entity_type, level in LEVELS.items()}

# Minimum authority needed to create each entity type; only the super-admin creates unions
CREATION_LEVELS: Dict[EntityType, int] = {
    EntityType.UNION: SUPER_ADMIN_LEVEL,
    EntityType.CONFERENCE: 0,
    EntityType.CHURCH: 1,
    EntityType.TEAM: 2,
    EntityType.SERVICE: 3,
}


def parse_entity_type(value: "str | EntityType") -> EntityType:
    try:
        return EntityType(value.lower() if isinstance(value, str) else value)
    except ValueError:
        raise ValidationError(f"Unknown entity type: {value!r}", {"entity_type": str(value)})


def level_of(entity_type: "str | EntityType") -> int:
    return LEVELS[parse_entity_type(entity_type)]


def type_at(level: int) -> EntityType:
    if level not in TYPES_BY_LEVEL:
        raise ValidationError(f"Hierarchy level out of range: {level}", {"level": level})
    return TYPES_BY_LEVEL[level]


def parent_type(entity_type: "str | EntityType") -> Optional[EntityType]:
    """Type of the required parent, or None for unions."""
    level = level_of(entity_type)
    return TYPES_BY_LEVEL[level - 1] if level > 0 else None


def can_manage(manager_level: int, target_level: int) -> bool:
    """Higher levels (lower numbers) manage lower levels, never their peers."""
    return manager_level < target_level


def managed_levels(level: int) -> List[int]:
    return [target for target in range(0, MAX_LEVEL + 1) if can_manage(level, target)]


def creation_level(entity_type: "str | EntityType") -> int:
    return CREATION_LEVELS[parse_entity_type(entity_type)]


def can_create(
    actor_level: Optional[int],
    actor_path: Optional[str],
    entity_type: "str | EntityType",
    parent_path: Optional[str],
    is_super_admin: bool = False,
) -> bool:
    """
    Decide whether an actor may create an entity under ``parent_path``.

    The actor's level must strictly precede the new entity's level and the
    intended parent must lie inside the actor's own subtree.
    """
    if is_super_admin:
        return True
    if actor_level is None or actor_path is None or parent_path is None:
        return False
    if actor_level > creation_level(entity_type):
        return False
    return paths.is_subtree(parent_path, actor_path)
