"""
MQTT topic helpers for pc2mqtt.

Topics are hierarchical, '/'-delimited. Patterns may use '+' (exactly one level)
and a trailing '#' (the parent level and any remainder).
Device-scoped topics live under <device_id>/.
"""

from __future__ import annotations

import re

SINGLE_LEVEL_WILDCARD = "+"
MULTI_LEVEL_WILDCARD = "#"
SEPARATOR = "/"

_DEVICE_ID_RE = re.compile(r"^[^/+#\s]+$")


class TopicError(ValueError):
    """Raised when a topic or topic pattern is malformed."""


def validate_device_id(device_id: str) -> str:
    if not isinstance(device_id, str) or not device_id:
        raise TopicError("device_id must be a non-empty string")
    if not _DEVICE_ID_RE.fullmatch(device_id):
        raise TopicError(
            f"device_id '{device_id}' is invalid; '/', '+', '#' and whitespace are not allowed"
        )
    return device_id


def normalize(topic: str) -> str:
    """
    Canonical form used for routing keys and inbound lookups:
    surrounding whitespace and leading/trailing separators removed.
    """
    if not isinstance(topic, str):
        raise TopicError(f"topic must be a string, got {type(topic).__name__}")
    norm = topic.strip().strip(SEPARATOR)
    if not norm:
        raise TopicError("topic must be non-empty")
    return norm


def routing_key(topic: str) -> str:
    """
    Inbound lookup form of a received topic. Topics made only of separators
    ('/', '//') are legal MQTT and are kept as is, so only wildcards match them.
    """
    if topic.strip(SEPARATOR) == "":
        return topic
    return normalize(topic)


def join(*parts: str) -> str:
    """Join topic fragments, dropping empty fragments and duplicate separators."""
    segments: list[str] = []
    for part in parts:
        if not part:
            continue
        segments.extend(s for s in part.strip().split(SEPARATOR) if s)
    return SEPARATOR.join(segments)


def with_device_id(topic: str, device_id: str) -> str:
    """Prefix a raw topic with the device id: ('/status', 'pc') -> 'pc/status'."""
    validate_device_id(device_id)
    return join(device_id, topic)


def validate_pattern(pattern: str) -> str:
    """
    Validate and normalize a subscription pattern.

    '+' must occupy a whole level; '#' must occupy the whole last level.
    """
    norm = normalize(pattern)
    levels = norm.split(SEPARATOR)
    for i, level in enumerate(levels):
        if MULTI_LEVEL_WILDCARD in level:
            if level != MULTI_LEVEL_WILDCARD:
                raise TopicError(f"'#' must occupy a whole level: {pattern!r}")
            if i != len(levels) - 1:
                raise TopicError(f"'#' must be the last level: {pattern!r}")
        if SINGLE_LEVEL_WILDCARD in level and level != SINGLE_LEVEL_WILDCARD:
            raise TopicError(f"'+' must occupy a whole level: {pattern!r}")
    return norm


def is_pattern(topic: str) -> bool:
    return SINGLE_LEVEL_WILDCARD in topic or MULTI_LEVEL_WILDCARD in topic


def matches(pattern: str, topic: str) -> bool:
    """
    True when a normalized topic matches a normalized pattern.

    'a/b/#' matches 'a/b' and 'a/b/c/d'; 'a/+/c' matches 'a/x/c' but not
    'a/x/y/c'. Wildcards in the first level never match '$' topics.
    """
    p_levels = pattern.split(SEPARATOR)
    t_levels = topic.split(SEPARATOR)

    if t_levels[0].startswith("$") and p_levels[0] in (
        SINGLE_LEVEL_WILDCARD,
        MULTI_LEVEL_WILDCARD,
    ):
        return False

    for i, p in enumerate(p_levels):
        if p == MULTI_LEVEL_WILDCARD:
            return True
        if i >= len(t_levels):
            return False
        if p != SINGLE_LEVEL_WILDCARD and p != t_levels[i]:
            return False
    return len(p_levels) == len(t_levels)
