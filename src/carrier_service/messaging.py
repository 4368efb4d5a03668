from __future__ import annotations

import asyncio
import json
import logging
from collections import defaultdict
from typing import Any, Awaitable, Callable

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer

logger = logging.getLogger(__name__)

CARRIER_VERIFICATION_RESULTS_TOPIC = "carrier_verification_results"
CARRIER_REVERIFICATION_TRIGGERS_TOPIC = "carrier_reverification_triggers"


class KafkaBus:
    """Producer with an in-process queue fallback when no broker is reachable."""

    def __init__(self, bootstrap_servers: str, client_id: str) -> None:
        self.bootstrap_servers = bootstrap_servers
        self.client_id = client_id
        self._producer: AIOKafkaProducer | None = None
        self._queues: dict[str, asyncio.Queue[dict[str, Any]]] = defaultdict(asyncio.Queue)

    @property
    def connected(self) -> bool:
        return self._producer is not None

    async def connect(self) -> None:
        producer = AIOKafkaProducer(
            bootstrap_servers=self.bootstrap_servers,
            client_id=self.client_id,
            value_serializer=lambda v: json.dumps(v).encode("utf-8"),
        )
        try:
            await asyncio.wait_for(producer.start(), timeout=1.0)
            self._producer = producer
        except Exception:
            logger.warning("Kafka unavailable at %s, using in-process queues", self.bootstrap_servers)
            self._producer = None
            try:
                await producer.stop()
            except Exception:
                pass

    async def close(self) -> None:
        if self._producer is not None:
            await self._producer.stop()
            self._producer = None

    async def ping(self) -> bool:
        if self._producer is None:
            return False
        try:
            partitions = await self._producer.partitions_for(CARRIER_VERIFICATION_RESULTS_TOPIC)
            return partitions is not None
        except Exception:
            return False

    async def publish(self, topic: str, value: dict[str, Any], key: str | None = None) -> None:
        if self._producer is not None:
            try:
                encoded_key = None if key is None else key.encode("utf-8")
                await self._producer.send_and_wait(topic, value=value, key=encoded_key)
                return
            except Exception:
                logger.warning("Kafka publish to %s failed, queueing locally", topic, exc_info=True)
        await self._queues[topic].put(value)

    def pending(self, topic: str) -> int:
        return self._queues[topic].qsize()

    async def consume_reverification_forever(
        self,
        handler: Callable[[dict[str, Any]], Awaitable[None]],
        stop_event: asyncio.Event,
    ) -> None:
        if self._producer is not None:
            consumer = AIOKafkaConsumer(
                CARRIER_REVERIFICATION_TRIGGERS_TOPIC,
                bootstrap_servers=self.bootstrap_servers,
                group_id=f"{self.client_id}-reverifier",
                value_deserializer=lambda v: json.loads(v.decode("utf-8")),
            )
            try:
                await asyncio.wait_for(consumer.start(), timeout=1.0)
                while not stop_event.is_set():
                    msg = await consumer.getone()
                    await handler(msg.value)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.warning("Reverification consumer stopped, draining local queue", exc_info=True)
            finally:
                try:
                    await consumer.stop()
                except Exception:
                    pass

        queue = self._queues[CARRIER_REVERIFICATION_TRIGGERS_TOPIC]
        while not stop_event.is_set():
            try:
                event = await asyncio.wait_for(queue.get(), timeout=0.5)
            except asyncio.TimeoutError:
                continue
            try:
                await handler(event)
            except Exception:
                logger.exception("Reverification trigger failed")
