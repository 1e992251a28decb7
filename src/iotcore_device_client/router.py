"""
Inbound message dispatch.

The transport hands every subscription notification to the router. Data
messages go to the handler registered for the matching topic filter;
acknowledgements and other protocol notifications are ignored.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional

import paho.mqtt.client as mqtt

from iotcore_device_client.topics import validate_topic_filter
from iotcore_device_client.transport import SubscriptionEvent, SubscriptionEventKind

logger = logging.getLogger(__name__)

MessageHandler = Callable[[str, bytes], None]


class MessageRouter:
    def __init__(self, default_handler: Optional[MessageHandler] = None) -> None:
        self._handlers: dict[str, MessageHandler] = {}
        self._default = default_handler

    def add_handler(self, topic_filter: str, handler: MessageHandler) -> None:
        validate_topic_filter(topic_filter)
        self._handlers[topic_filter] = handler
        logger.debug("Handler registered for %s", topic_filter)

    def remove_handler(self, topic_filter: str) -> None:
        self._handlers.pop(topic_filter, None)

    def __call__(self, event: SubscriptionEvent) -> None:
        if event.kind is not SubscriptionEventKind.MESSAGE:
            if event.kind is SubscriptionEventKind.SUBSCRIBE_FAILED:
                logger.warning("Subscription to %s was rejected", event.topic)
            else:
                logger.debug("Ignoring %s notification for %s", event.kind.value, event.topic)
            return
        self.on_message(event.topic, event.payload)

    def _resolve(self, topic: str) -> Optional[MessageHandler]:
        handler = self._handlers.get(topic)
        if handler is not None:
            return handler
        for topic_filter, candidate in self._handlers.items():
            if mqtt.topic_matches_sub(topic_filter, topic):
                return candidate
        return self._default

    def on_message(self, topic: str, payload: bytes) -> None:
        handler = self._resolve(topic)
        if handler is None:
            logger.warning("Unhandled topic: %s", topic)
            return
        try:
            handler(topic, payload)
        except Exception:
            logger.exception("Message handler failed for topic %s", topic)


def log_message(topic: str, payload: bytes) -> None:
    """Default handler: report the received message and its topic."""
    text = payload.decode("utf-8", errors="replace")
    logger.info("Received message %s on topic %s", text, topic)
