"""MQTT topic conventions for HomeHub.

Topics follow ``homehub/{category}/{id}/{action}``, e.g.
``homehub/devices/light1/state``.
"""

import re

ROOT = "homehub"
DEVICES_ROOT = f"{ROOT}/devices"

DISCOVERY_ANNOUNCE = f"{ROOT}/discovery/announce"
SYSTEM_STATUS = f"{ROOT}/system/status"

MAX_TOPIC_LENGTH = 65535

_DEVICE_ID_RE = re.compile(rf"^{DEVICES_ROOT}/([^/]+)/")


def device_topic(device_id: str) -> str:
    """Default topic prefix for a device."""
    return f"{DEVICES_ROOT}/{device_id}"


def set_topic(prefix: str) -> str:
    return f"{prefix}/set"


def state_topic(prefix: str) -> str:
    return f"{prefix}/state"


def get_topic(prefix: str) -> str:
    return f"{prefix}/get"


def parse_device_id_from_topic(topic: str) -> str | None:
    """Return ``light1`` for ``homehub/devices/light1/state``, else None."""
    match = _DEVICE_ID_RE.match(topic)
    return match.group(1) if match else None


def parse_action_from_topic(topic: str) -> str | None:
    """Return the last topic level (``state``, ``set``...)."""
    _, sep, action = topic.rpartition("/")
    return action if sep and action else None


def match_topic(topic: str, pattern: str) -> bool:
    """Check a concrete topic against a pattern with ``+``/``#`` wildcards."""
    topic_parts = topic.split("/")
    pattern_parts = pattern.split("/")

    for i, part in enumerate(pattern_parts):
        if part == "#":
            return True
        if part == "+":
            if i >= len(topic_parts):
                return False
            continue
        if i >= len(topic_parts) or part != topic_parts[i]:
            return False

    return len(topic_parts) == len(pattern_parts)


def is_valid_topic(topic: str) -> bool:
    """Whether ``topic`` may be published to (no wildcards, no NUL)."""
    if not topic or len(topic) > MAX_TOPIC_LENGTH:
        return False
    if "\0" in topic:
        return False
    return "+" not in topic and "#" not in topic


def sanitize_device_id(device_id: str) -> str:
    """Make a device id safe to embed in a topic level."""
    cleaned = re.sub(r"[^a-zA-Z0-9_-]", "-", device_id)
    return cleaned.strip("-").lower()
