"""
Materialized path utilities for the organization tree.

A path is the '/'-joined chain of segments from the union down to the node:

    union      u1
    conference u1/conf2
    church     u1/conf2/c3
    team       u1/conf2/c3/team_t9
    service    u1/conf2/c3/team_t9/service_s1

The empty string is the system (root) scope and contains every path.
"""
import re
from typing import List, Optional, Tuple


SEPARATOR = "/"
MAX_DEPTH = 5

SEGMENT_PATTERN = re.compile(r"^[A-Za-z0-9_]+$")

# Tagged segments and the only segment index each may occupy
SEGMENT_TAGS = {"team": "team_", "service": "service_"}
TAG_POSITIONS = {"team_": 3, "service_": 4}


def segments(path: str) -> List[str]:
    """
    Split a path into its segments.

    Examples:
        >>> segments('')
        []
        >>> segments('u1/conf2/c3')
        ['u1', 'conf2', 'c3']
    """
    if not path:
        return []
    return path.split(SEPARATOR)


def _segment_tag(segment: str) -> Optional[str]:
    for tag in TAG_POSITIONS:
        if segment.startswith(tag) and len(segment) > len(tag):
            return tag
    return None


def validate(path: str) -> bool:
    """
    Check path grammar.

    Empty is valid. Otherwise one to five segments of ``[A-Za-z0-9_]+``;
    ``team_<id>`` may only appear as the fourth segment and ``service_<id>``
    only as the fifth.

    Examples:
        >>> validate('u1/conf2/c3/team_t9')
        True
        >>> validate('u1/team_t9')
        False
        >>> validate('u1//c3')
        False
    """
    if not isinstance(path, str):
        return False
    if path == "":
        return True
    parts = path.split(SEPARATOR)
    if len(parts) > MAX_DEPTH:
        return False
    for index, segment in enumerate(parts):
        if not SEGMENT_PATTERN.match(segment):
            return False
        tag = _segment_tag(segment)
        if tag is not None and TAG_POSITIONS[tag] != index:
            return False
    return True


def depth(path: str) -> int:
    """Number of segments; 0 for the root scope."""
    return len(segments(path))


def parent(path: str) -> str:
    """
    All segments but the last.

    Examples:
        >>> parent('u1/conf2/c3')
        'u1/conf2'
        >>> parent('u1')
        ''
    """
    parts = segments(path)
    return SEPARATOR.join(parts[:-1])


def ancestors(path: str) -> List[str]:
    """
    Prefixes from the shallowest to ``path`` itself, inclusive.

    Examples:
        >>> ancestors('u1/conf2/c3')
        ['u1', 'u1/conf2', 'u1/conf2/c3']
    """
    parts = segments(path)
    return [SEPARATOR.join(parts[:i]) for i in range(1, len(parts) + 1)]


def is_subtree(candidate: str, root: str) -> bool:
    """
    True if ``candidate`` is ``root`` or lies beneath it.

    The empty root is the global scope. Matching is segment-aligned, so
    'u1/c10' is not inside 'u1/c1'.
    """
    if root == "":
        return True
    if candidate is None:
        return False
    return candidate == root or candidate.startswith(root + SEPARATOR)


def descendant_prefix(path: str) -> str:
    """Prefix shared by every strict descendant of ``path``."""
    return path + SEPARATOR


def encode_segment(entity_type: str, entity_id: str) -> str:
    """
    Path segment for a node.

    Organizations use their raw id; teams and services are tagged.

    Examples:
        >>> encode_segment('church', 'c3')
        'c3'
        >>> encode_segment('team', 't9')
        'team_t9'
    """
    return SEGMENT_TAGS.get(entity_type, "") + entity_id


def decode_segment(segment: str) -> Tuple[Optional[str], str]:
    """
    Split a segment into (tag, id).

    Examples:
        >>> decode_segment('service_s1')
        ('service_', 's1')
        >>> decode_segment('u1')
        (None, 'u1')
    """
    tag = _segment_tag(segment)
    if tag is None:
        return None, segment
    return tag, segment[len(tag):]


def build(parent_path: Optional[str], entity_type: str, entity_id: str) -> str:
    """
    Path for a node placed under ``parent_path``.

    Examples:
        >>> build(None, 'union', 'u1')
        'u1'
        >>> build('u1/conf2/c3', 'team', 't9')
        'u1/conf2/c3/team_t9'
    """
    segment = encode_segment(entity_type, entity_id)
    if not parent_path:
        return segment
    return parent_path + SEPARATOR + segment


def splice(path: str, old_prefix: str, new_prefix: str) -> str:
    """
    Replace the ``old_prefix`` of a subtree path with ``new_prefix``.

    The remainder of the string is kept verbatim.

    Examples:
        >>> splice('u1/conf2/c3/team_t9', 'u1/conf2/c3', 'u1/conf5/c3')
        'u1/conf5/c3/team_t9'
    """
    if not is_subtree(path, old_prefix) or old_prefix == "":
        raise ValueError(f"{path!r} is not inside {old_prefix!r}")
    return new_prefix + path[len(old_prefix):]


def embeds(path: str, entity_id: str) -> bool:
    """
    True if ``entity_id`` appears as a non-terminal segment of ``path``.

    Tagged segments are compared by their id part.
    """
    for segment in segments(path)[:-1]:
        if segment == entity_id or decode_segment(segment)[1] == entity_id:
            return True
    return False
