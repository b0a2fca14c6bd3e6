from __future__ import annotations

import json
import logging
from collections import defaultdict
from typing import Any, Callable, Protocol

from freightops.config import Settings, settings

logger = logging.getLogger(__name__)

EventHandler = Callable[[dict[str, Any]], None]


class EventBus(Protocol):
    def subscribe(self, event_type: str, handler: EventHandler) -> None:
        ...

    def publish(self, event_type: str, envelope: dict[str, Any]) -> None:
        ...


class InMemoryEventBus:
    def __init__(self) -> None:
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event_type: str, handler: EventHandler) -> None:
        self._subscribers[event_type].append(handler)

    def publish(self, event_type: str, envelope: dict[str, Any]) -> None:
        # Exact subscribers
        for handler in self._subscribers.get(event_type, []):
            handler(envelope)

        # Wildcard subscribers
        for handler in self._subscribers.get("*", []):
            handler(envelope)


class KafkaEventBus(InMemoryEventBus):
    def __init__(self, bootstrap_servers: str, topic: str) -> None:
        super().__init__()
        from confluent_kafka import Producer  # type: ignore

        self.topic = topic
        self._producer = Producer({"bootstrap.servers": bootstrap_servers})

    def publish(self, event_type: str, envelope: dict[str, Any]) -> None:
        super().publish(event_type, envelope)
        payload = json.dumps({"event_type": event_type, **envelope}, default=str).encode("utf-8")
        key = str(envelope.get("dedup_key") or envelope.get("document_id") or "").encode("utf-8")
        self._producer.produce(self.topic, payload, key=key)
        self._producer.poll(0)


def build_event_bus(cfg: Settings | None = None) -> EventBus:
    cfg = cfg or settings
    if cfg.event_bus_backend == "kafka" and cfg.kafka_bootstrap_servers:
        logger.info("Publishing workflow events to Kafka topic %s", cfg.kafka_topic)
        return KafkaEventBus(cfg.kafka_bootstrap_servers, cfg.kafka_topic)
    return InMemoryEventBus()
