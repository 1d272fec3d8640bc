"""
Action pattern matching for Gatehouse.

Actions are colon-delimited strings such as ``read:contacts`` or
``invoke:billing:refund``. Patterns use the same shape, with ``*`` standing
in for whole segments:

    *                   matches every action
    read:*              matches read:contacts, read:contacts:42, ...
    *:contacts          matches read:contacts, delete:contacts
    read:contacts       matches only read:contacts

Matching is segment-wise and case-sensitive. There is no regex engine and no
backtracking, so evaluation cost is linear in the number of segments no
matter who wrote the pattern.

Malformed patterns are caught by validate_pattern() when a policy is loaded.
matches() itself never raises.
"""

import re

WILDCARD = "*"
SEPARATOR = ":"

_SEGMENT_RE = re.compile(r"[A-Za-z0-9_.\-/@]+")


def _split(value: str) -> list[str]:
    return value.split(SEPARATOR)


def _segment_matches(pattern_segment: str, actual_segment: str) -> bool:
    return pattern_segment == WILDCARD or pattern_segment == actual_segment


def matches(pattern: str, actual: str) -> bool:
    """
    Check whether an action matches a pattern.

    Args:
        pattern: Action pattern (validated at load time)
        actual: The concrete action being attempted

    Returns:
        True if the action is matched by the pattern
    """
    if not isinstance(pattern, str) or not isinstance(actual, str):
        return False
    if pattern == WILDCARD:
        return True

    pattern_parts = _split(pattern)
    actual_parts = _split(actual)

    if pattern_parts[-1] == WILDCARD:
        # Trailing wildcard: fixed prefix, then one or more segments
        prefix = pattern_parts[:-1]
        if len(actual_parts) < len(pattern_parts):
            return False
        return all(
            _segment_matches(p, a) for p, a in zip(prefix, actual_parts)
        )

    if len(pattern_parts) != len(actual_parts):
        return False
    return all(_segment_matches(p, a) for p, a in zip(pattern_parts, actual_parts))


def matches_any(patterns: list[str] | tuple[str, ...], actual: str) -> bool:
    """Check whether an action matches at least one pattern."""
    return any(matches(pattern, actual) for pattern in patterns)


def validate_pattern(pattern: str) -> list[str]:
    """
    Validate an action pattern.

    Args:
        pattern: The pattern to check

    Returns:
        List of error messages (empty if valid)
    """
    if not isinstance(pattern, str):
        return [f"pattern must be a string, got {type(pattern).__name__}"]
    if not pattern:
        return ["pattern must not be empty"]
    if pattern == WILDCARD:
        return []

    errors: list[str] = []
    for index, segment in enumerate(_split(pattern)):
        if not segment:
            errors.append(f"{pattern!r}: segment {index} is empty")
        elif segment == WILDCARD:
            continue
        elif WILDCARD in segment:
            errors.append(
                f"{pattern!r}: '*' must stand alone in a segment, got {segment!r}"
            )
        elif not _SEGMENT_RE.fullmatch(segment):
            errors.append(f"{pattern!r}: segment {segment!r} contains invalid characters")
    return errors


def covers(parent: str, child: str) -> bool:
    """
    Check whether every action matched by ``child`` is matched by ``parent``.

    Used to verify that a delegated grant only narrows the grant it was
    derived from.

    Examples:
        covers("read:*", "read:contacts")      -> True
        covers("read:*", "read:*")             -> True
        covers("read:contacts", "read:*")      -> False
        covers("*:contacts", "read:contacts")  -> True
    """
    if parent == WILDCARD:
        return True
    if child == WILDCARD:
        return False

    parent_parts = _split(parent)
    child_parts = _split(child)
    parent_open = parent_parts[-1] == WILDCARD
    child_open = child_parts[-1] == WILDCARD

    if parent_open:
        prefix = parent_parts[:-1]
        # Child's shortest match must still reach the parent's wildcard
        if len(child_parts) < len(parent_parts):
            return False
        for p, c in zip(prefix, child_parts):
            if p != WILDCARD and p != c:
                return False
        return True

    if child_open or len(parent_parts) != len(child_parts):
        return False
    for p, c in zip(parent_parts, child_parts):
        if p != WILDCARD and p != c:
            return False
    return True


def covers_all(parents: list[str] | tuple[str, ...], children: list[str] | tuple[str, ...]) -> list[str]:
    """
    Return the child patterns that no parent pattern covers.

    An empty result means ``children`` is a subset of ``parents``.
    """
    return [child for child in children if not any(covers(p, child) for p in parents)]
