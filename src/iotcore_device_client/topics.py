"""
Topic, QoS and message value types.

Publish topics are concrete MQTT topic names: non-empty, no wildcards,
at most 65535 bytes once UTF-8 encoded.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum
from typing import Union

_MAX_TOPIC_BYTES = 65535
_WILDCARDS = ("+", "#")


class TopicError(ValueError):
    """Raised when a topic name or message cannot be published."""


class QoS(IntEnum):
    AT_MOST_ONCE = 0
    AT_LEAST_ONCE = 1
    EXACTLY_ONCE = 2


def parse_qos(raw: Union[str, int]) -> QoS:
    """Accept 0/1/2 (int or str) or an enum member name, case-insensitive."""
    if isinstance(raw, QoS):
        return raw
    text = str(raw).strip()
    if text.isdigit():
        try:
            return QoS(int(text))
        except ValueError as exc:
            raise TopicError(f"QoS out of range: {raw!r}") from exc
    try:
        return QoS[text.upper().replace("-", "_")]
    except KeyError as exc:
        raise TopicError(f"Unknown QoS: {raw!r}") from exc


def validate_topic(topic: str) -> str:
    if not isinstance(topic, str) or not topic:
        raise TopicError("topic must be a non-empty string")
    if any(w in topic for w in _WILDCARDS):
        raise TopicError(f"topic '{topic}' must not contain wildcards")
    if len(topic.encode("utf-8")) > _MAX_TOPIC_BYTES:
        raise TopicError("topic exceeds 65535 bytes")
    return topic


def validate_topic_filter(topic_filter: str) -> str:
    """Subscription filters may use '+' for a level and a trailing '#'."""
    if not isinstance(topic_filter, str) or not topic_filter:
        raise TopicError("topic filter must be a non-empty string")
    levels = topic_filter.split("/")
    for i, level in enumerate(levels):
        if "#" in level and (level != "#" or i != len(levels) - 1):
            raise TopicError(f"'#' must be the last level in '{topic_filter}'")
        if "+" in level and level != "+":
            raise TopicError(f"'+' must occupy a whole level in '{topic_filter}'")
    return topic_filter


@dataclass(frozen=True, slots=True)
class Message:
    topic: str
    payload: bytes
    qos: QoS = QoS.AT_LEAST_ONCE

    def __post_init__(self) -> None:
        validate_topic(self.topic)
        if isinstance(self.payload, str):
            object.__setattr__(self, "payload", self.payload.encode("utf-8"))
        elif not isinstance(self.payload, (bytes, bytearray)):
            raise TopicError("payload must be bytes or str")
        else:
            object.__setattr__(self, "payload", bytes(self.payload))
        object.__setattr__(self, "qos", parse_qos(self.qos))
