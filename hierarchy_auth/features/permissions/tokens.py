"""
Parsed permission tokens.

Role documents store permissions as strings:

    "*"                           everything
    "organizations.update"        one action, unscoped
    "organizations.*"             every action on a resource
    "teams.manage:subordinate"    one action, restricted to a scope

Strings are parsed once, when roles are loaded, into ``PermissionToken``
values. Checks then compare tokens structurally instead of re-parsing.
"""
import re
from dataclasses import dataclass
from typing import FrozenSet, Iterable, Optional

from hierarchy_auth.core.exceptions import ValidationError


WILDCARD = "*"

SCOPES = ("self", "own", "subordinate", "all")

TOKEN_PATTERN = re.compile(r"^(?P<resource>[a-z_]+)\.(?P<action>[a-z_]+|\*)(?::(?P<scope>[a-z_]+))?$")


@dataclass(frozen=True, order=True)
class PermissionToken:
    resource: str
    action: str
    scope: Optional[str] = None

    @property
    def is_global(self) -> bool:
        return self.resource == WILDCARD

    def __str__(self) -> str:
        if self.is_global:
            return WILDCARD
        base = f"{self.resource}.{self.action}"
        return f"{base}:{self.scope}" if self.scope else base


GLOBAL = PermissionToken(WILDCARD, WILDCARD)


def parse(value: str) -> PermissionToken:
    """
    Parse one permission string.

    Raises ValidationError for anything outside the grammar.
    """
    if value == WILDCARD:
        return GLOBAL
    match = TOKEN_PATTERN.match(value or "")
    if match is None:
        raise ValidationError(f"Invalid permission format: {value!r}", {"permission": value})
    return PermissionToken(match["resource"], match["action"], match["scope"])


def parse_many(values: Iterable[str]) -> FrozenSet[PermissionToken]:
    return frozenset(parse(value) for value in values)


def split_permission(permission: str) -> tuple[str, str]:
    """Split a requested ``resource.action`` into its parts."""
    token = parse(permission)
    if token.is_global or token.scope is not None or token.action == WILDCARD:
        raise ValidationError(
            f"Requested permission must be a concrete 'resource.action': {permission!r}",
            {"permission": permission},
        )
    return token.resource, token.action
