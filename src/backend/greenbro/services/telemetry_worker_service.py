"""Per-device sequential lanes between the transport and the ingest pipeline.

Messages are routed to a lane by a stable hash of the device segment of the
topic, so one device's messages are processed strictly in delivery order
while different devices proceed in parallel on other lanes. Each lane has a
bounded queue; when it is full the message is dropped and counted rather
than stalling the broker connection.
"""

import asyncio
import zlib
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable

import structlog

from greenbro.core import metrics
from greenbro.core.clock import utcnow
from greenbro.services.health_service import HealthState

logger = structlog.get_logger()

ProcessFunc = Callable[[str, bytes, datetime], Awaitable[Any]]

DROP_LOG_EVERY = 1000


def device_key_from_topic(topic: str) -> str:
    """Device segment of ``prefix/site/device/telemetry``; the whole topic otherwise."""
    parts = topic.split("/")
    if len(parts) >= 3 and parts[2]:
        return parts[2]
    return topic


@dataclass(frozen=True)
class _Envelope:
    topic: str
    payload: bytes
    received_at: datetime


class DeviceLaneDispatcher:
    """Fixed pool of sequential lanes keyed by device."""

    def __init__(
        self,
        process: ProcessFunc,
        num_lanes: int = 4,
        queue_size: int = 1000,
        enqueue_timeout: float = 0.0,
        health: HealthState | None = None,
        key_func: Callable[[str], str] = device_key_from_topic,
    ):
        self.process = process
        self.num_lanes = max(1, num_lanes)
        self.queue_size = queue_size
        self.enqueue_timeout = enqueue_timeout
        self.health = health
        self.key_func = key_func

        self._queues: list[asyncio.Queue[_Envelope]] = []
        self._workers: list[asyncio.Task] = []
        self._accepting = False
        self.dropped = 0

    @property
    def accepting(self) -> bool:
        return self._accepting

    def lane_for(self, key: str) -> int:
        return zlib.crc32(key.encode("utf-8")) % self.num_lanes

    def depth(self, lane: int) -> int:
        return self._queues[lane].qsize() if self._queues else 0

    async def start(self) -> None:
        if self._workers:
            return
        self._queues = [asyncio.Queue(maxsize=self.queue_size) for _ in range(self.num_lanes)]
        self._workers = [
            asyncio.create_task(self._lane_worker(i), name=f"device-lane-{i}")
            for i in range(self.num_lanes)
        ]
        self._accepting = True
        logger.info("Device lanes started", lanes=self.num_lanes, queue_size=self.queue_size)

    async def submit(self, topic: str, payload: bytes) -> bool:
        """Queue a message for its device's lane. Returns False if it was dropped."""
        if not self._accepting:
            return False

        lane = self.lane_for(self.key_func(topic))
        queue = self._queues[lane]
        envelope = _Envelope(topic=topic, payload=payload, received_at=utcnow())
        try:
            if self.enqueue_timeout > 0:
                await asyncio.wait_for(queue.put(envelope), timeout=self.enqueue_timeout)
            else:
                queue.put_nowait(envelope)
        except (asyncio.QueueFull, asyncio.TimeoutError):
            self._record_drop(lane, topic)
            return False

        metrics.set_lane_depth(lane, queue.qsize())
        return True

    def _record_drop(self, lane: int, topic: str) -> None:
        self.dropped += 1
        metrics.messages_dropped_total.inc()
        if self.health is not None:
            self.health.record_drop()
        if self.dropped % DROP_LOG_EVERY == 1:
            logger.warning(
                "Device lane full, dropping message",
                lane=lane,
                topic=topic,
                dropped_total=self.dropped,
            )

    async def _lane_worker(self, lane: int) -> None:
        queue = self._queues[lane]
        while True:
            envelope = await queue.get()
            try:
                await self.process(envelope.topic, envelope.payload, envelope.received_at)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    "Device lane failed to process message",
                    lane=lane,
                    topic=envelope.topic,
                    error=str(e),
                )
            finally:
                queue.task_done()
                metrics.set_lane_depth(lane, queue.qsize())

    async def stop(self, grace_seconds: float = 10.0) -> None:
        """Stop accepting, let queued work drain for up to ``grace_seconds``, then cancel."""
        self._accepting = False
        if not self._workers:
            return

        try:
            await asyncio.wait_for(
                asyncio.gather(*(q.join() for q in self._queues)),
                timeout=grace_seconds,
            )
        except asyncio.TimeoutError:
            pending = sum(q.qsize() for q in self._queues)
            logger.warning("Device lanes did not drain in time", pending=pending)

        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        logger.info("Device lanes stopped", dropped_total=self.dropped)
