"""Topic and client-id helpers.

We keep naming in one place so the subscriber and every publisher agree.

Client ids (unique per session, see `new_run_id`):
- `<prefix>-<run_id>-sub`
- `<prefix>-<run_id>-pub-<index>`

The run id keeps two concurrent runs against the same broker from kicking each
other off: MQTT brokers drop the older connection when a client id is reused.
"""

from __future__ import annotations

import uuid

MAX_TOPIC_BYTES = 65535


def new_run_id() -> str:
    return uuid.uuid4().hex[:8]


def subscriber_client_id(prefix: str, run_id: str) -> str:
    return f"{prefix}-{run_id}-sub"


def publisher_id_prefix(prefix: str, run_id: str) -> str:
    """Common prefix of every publisher id in one run."""
    return f"{prefix}-{run_id}-pub-"


def publisher_client_id(prefix: str, run_id: str, index: int) -> str:
    return f"{publisher_id_prefix(prefix, run_id)}{index}"


def validate_publish_topic(topic: str) -> None:
    """Raise ValueError if `topic` cannot be used as a PUBLISH topic name.

    Topic names must be non-empty, fit in a UTF-8 string field and must not
    contain wildcards.
    """
    _validate_common(topic)
    if "+" in topic or "#" in topic:
        raise ValueError(f"publish topic must not contain wildcards: {topic!r}")


def validate_topic_filter(topic_filter: str) -> None:
    """Raise ValueError if `topic_filter` is not a valid SUBSCRIBE filter.

    `+` must occupy a whole level; `#` must occupy the whole last level.
    """
    _validate_common(topic_filter)
    levels = topic_filter.split("/")
    for i, level in enumerate(levels):
        if "+" in level and level != "+":
            raise ValueError(f"'+' must occupy a whole topic level: {topic_filter!r}")
        if "#" in level and (level != "#" or i != len(levels) - 1):
            raise ValueError(f"'#' must be the last topic level: {topic_filter!r}")


def _validate_common(topic: str) -> None:
    if not topic:
        raise ValueError("topic must not be empty")
    if "\x00" in topic:
        raise ValueError("topic must not contain NUL characters")
    if len(topic.encode("utf-8")) > MAX_TOPIC_BYTES:
        raise ValueError("topic too long")
