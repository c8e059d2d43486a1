"""
Scope-qualified permission matching.

Matching order, first match decides:

1. "*"                          allow
2. "resource.action"            allow, no scope check
3. "resource.action:<scope>"    allow if the scope holds
4. "resource.*" / "resource.*:<scope>"   as 2 / 3 for any action
5. anything else                deny

Every path comes from the hierarchy store; nothing here does I/O.
"""
from typing import AbstractSet, Optional

from hierarchy_auth.core.exceptions import ValidationError
from hierarchy_auth.features.hierarchy import paths
from hierarchy_auth.features.permissions import tokens
from hierarchy_auth.features.permissions.tokens import PermissionToken, WILDCARD
from hierarchy_auth.utils import get_logger


log = get_logger(__name__)


def validate_scope(
    scope: Optional[str],
    actor_path: Optional[str],
    target_path: Optional[str],
    actor_id: Optional[str] = None,
    target_id: Optional[str] = None,
) -> bool:
    """
    Decide whether ``target`` falls inside ``scope`` relative to the actor.

    "subordinate" includes the actor's own node.
    """
    if scope == "all":
        return True
    if scope == "self":
        return actor_id is not None and actor_id == target_id
    if scope in ("subordinate", "own"):
        if actor_path is None or target_path is None:
            return False
        if scope == "subordinate":
            return paths.is_subtree(target_path, actor_path)
        return target_path != "" and paths.parent(target_path) == actor_path
    return False


def has_permission(
    permission_set: AbstractSet[PermissionToken],
    permission: str,
    scope: Optional[str],
    actor_path: Optional[str],
    target_path: Optional[str],
    actor_id: Optional[str] = None,
    target_id: Optional[str] = None,
) -> bool:
    """
    Check ``permission`` ("resource.action") under ``scope``.

    Fails closed: an unknown scope or a malformed request denies.
    """
    if tokens.GLOBAL in permission_set:
        return True

    try:
        resource, action = tokens.split_permission(permission)
    except ValidationError:
        log.debug("Malformed permission request %r denied", permission)
        return False

    for candidate_action in (action, WILDCARD):
        if PermissionToken(resource, candidate_action) in permission_set:
            return True
        if scope and PermissionToken(resource, candidate_action, scope) in permission_set:
            return validate_scope(scope, actor_path, target_path, actor_id, target_id)

    return False
