"""MQTT connection manager for inbound heat pump telemetry.

Owns the single broker connection: reconnects with jittered exponential
backoff, re-issues every subscription after each connect, and hands raw
topic + payload bytes to the registered handlers in delivery order.
"""

import asyncio
import json
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable
from urllib.parse import unquote, urlsplit

import aiomqtt
import structlog

from greenbro.core import metrics
from greenbro.services.health_service import HealthState

logger = structlog.get_logger()

# Type for async message handlers: (topic, raw payload)
MessageHandler = Callable[[str, bytes], Awaitable[Any]]

TLS_SCHEMES = {"mqtts", "ssl"}
DEFAULT_PORTS = {"mqtt": 1883, "tcp": 1883, "mqtts": 8883, "ssl": 8883}


class TransportNotConnectedError(RuntimeError):
    """Raised when publishing without a live broker connection."""


@dataclass(frozen=True)
class BrokerAddress:
    hostname: str
    port: int
    tls: bool
    username: str | None = None
    password: str | None = None

    @property
    def display(self) -> str:
        return f"{self.hostname}:{self.port}"

    @classmethod
    def parse(cls, url: str, username: str | None = None, password: str | None = None) -> "BrokerAddress":
        """Parse ``mqtt[s]://[user:pass@]host[:port]``; explicit credentials win over the URL's."""
        parts = urlsplit(url)
        scheme = parts.scheme or "mqtt"
        if scheme not in DEFAULT_PORTS:
            raise ValueError(f"Unsupported MQTT URL scheme: {scheme}")
        if not parts.hostname:
            raise ValueError("MQTT URL has no host")
        return cls(
            hostname=parts.hostname,
            port=parts.port or DEFAULT_PORTS[scheme],
            tls=scheme in TLS_SCHEMES,
            username=username or (unquote(parts.username) if parts.username else None),
            password=password or (unquote(parts.password) if parts.password else None),
        )


def _payload_bytes(payload: Any) -> bytes:
    if payload is None:
        return b""
    if isinstance(payload, (bytes, bytearray)):
        return bytes(payload)
    if isinstance(payload, str):
        return payload.encode("utf-8")
    return str(payload).encode("utf-8")


class MQTTConnectionManager:
    """Async MQTT client with reconnect, resubscribe and ordered dispatch."""

    def __init__(
        self,
        health: HealthState | None = None,
        client_id: str = "greenbro-ingest",
        reconnect_base: float = 1.0,
        reconnect_max: float = 30.0,
        connect_timeout: float = 10.0,
        client_factory: Callable[..., Any] = aiomqtt.Client,
    ):
        self.health = health
        self.client_id = client_id
        self.reconnect_base = reconnect_base
        self.reconnect_max = reconnect_max
        self.connect_timeout = connect_timeout
        self._client_factory = client_factory

        self._address: BrokerAddress | None = None
        self._client: Any = None
        self._listener_task: asyncio.Task | None = None
        self._subscriptions: dict[str, tuple[MessageHandler, int]] = {}
        self._connected = False
        self._accepting = True

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def accepting(self) -> bool:
        return self._accepting

    @property
    def subscriptions(self) -> list[str]:
        return list(self._subscriptions)

    async def connect(self, url: str, username: str | None = None, password: str | None = None) -> None:
        """Start the connection loop. Returns immediately; failures are retried forever."""
        self._address = BrokerAddress.parse(url, username, password)
        self._accepting = True
        if self.health is not None:
            self.health.configure_mqtt(configured=True, disabled=False, broker=self._address.display)
        if self._listener_task and not self._listener_task.done():
            return
        logger.info("Starting MQTT connection manager", broker=self._address.display, tls=self._address.tls)
        self._listener_task = asyncio.create_task(self._listen_loop(), name="mqtt-listener")

    async def subscribe(self, topic_pattern: str, handler: MessageHandler, qos: int = 1) -> None:
        """Register a handler; it is (re)subscribed on every connect."""
        self._subscriptions[topic_pattern] = (handler, qos)
        logger.info("Registered MQTT handler", topic_pattern=topic_pattern)
        if self._client is not None and self._connected:
            await self._subscribe_one(self._client, topic_pattern, qos)

    async def publish(
        self,
        topic: str,
        payload: dict[str, Any] | str | bytes,
        qos: int = 1,
        retain: bool = False,
    ) -> None:
        if self._client is None or not self._connected:
            raise TransportNotConnectedError("MQTT client not connected")
        if isinstance(payload, dict):
            payload = json.dumps(payload)
        await self._client.publish(topic, payload, qos=qos, retain=retain)
        logger.debug("Published MQTT message", topic=topic, qos=qos)

    async def shutdown(self, drain: Callable[[], Awaitable[Any]] | None = None) -> None:
        """Stop accepting messages, let ``drain`` finish, then close the connection."""
        self._accepting = False
        if drain is not None:
            await drain()

        if self._listener_task:
            self._listener_task.cancel()
            try:
                await self._listener_task
            except asyncio.CancelledError:
                pass
            self._listener_task = None

        self._mark_disconnected(None)
        logger.info("MQTT connection manager stopped")

    def backoff_delay(self, attempt: int) -> float:
        """Jittered delay before reconnect ``attempt`` (0-based).

        The ceiling doubles from ``reconnect_base`` up to ``reconnect_max``;
        the actual delay is drawn from the upper half of it.
        """
        ceiling = min(self.reconnect_base * (2 ** min(attempt, 30)), self.reconnect_max)
        return random.uniform(ceiling / 2, ceiling)

    async def _listen_loop(self) -> None:
        """Main connection loop with exponential backoff reconnection."""
        attempt = 0
        address = self._address
        while True:
            try:
                async with self._client_factory(
                    hostname=address.hostname,
                    port=address.port,
                    username=address.username,
                    password=address.password,
                    identifier=self.client_id,
                    tls_params=aiomqtt.TLSParameters() if address.tls else None,
                    timeout=self.connect_timeout,
                ) as client:
                    self._client = client
                    self._connected = True
                    attempt = 0  # Reset on success
                    metrics.set_mqtt_connected(True)
                    if self.health is not None:
                        self.health.mark_connected()
                    logger.info("Connected to MQTT broker", broker=address.display)

                    for topic, (_, qos) in list(self._subscriptions.items()):
                        await self._subscribe_one(client, topic, qos)

                    async for message in client.messages:
                        await self._dispatch_message(message)

                # Message stream ended without an error: the broker closed on us
                self._mark_disconnected("Connection closed by broker")
                logger.warning("MQTT connection closed, reconnecting", broker=address.display)
            except aiomqtt.MqttError as e:
                self._mark_disconnected(e)
                logger.warning("MQTT connection lost, reconnecting", error=str(e), broker=address.display)
            except asyncio.CancelledError:
                self._mark_disconnected(None)
                logger.info("MQTT listener task cancelled")
                raise
            except Exception as e:
                self._mark_disconnected(e)
                logger.error("Unexpected MQTT error, reconnecting", error=str(e), broker=address.display)

            delay = self.backoff_delay(attempt)
            attempt += 1
            metrics.mqtt_reconnects_total.inc()
            if self.health is not None:
                self.health.mark_reconnect_attempt()
            logger.info("Reconnecting to MQTT broker", retry_in=round(delay, 2), attempt=attempt)
            await asyncio.sleep(delay)

    async def _subscribe_one(self, client: Any, topic: str, qos: int) -> None:
        try:
            await client.subscribe(topic, qos=qos)
            logger.info("Subscribed to MQTT topic", topic=topic)
        except aiomqtt.MqttError as e:
            # Retried on the next reconnect
            logger.warning("MQTT subscribe failed", topic=topic, error=str(e))
            if self.health is not None:
                self.health.record_error(f"subscribe {topic}: {e}")

    async def _dispatch_message(self, message: Any) -> None:
        if not self._accepting:
            return

        topic_str = str(message.topic)
        if self.health is not None:
            self.health.mark_message()
        metrics.messages_received_total.inc()

        payload = _payload_bytes(message.payload)
        for pattern, (handler, _) in self._subscriptions.items():
            if self._topic_matches(topic_str, pattern):
                try:
                    await handler(topic_str, payload)
                except Exception as e:
                    logger.error("MQTT handler error", topic=topic_str, pattern=pattern, error=str(e))
                return

        logger.debug("No handler for MQTT topic", topic=topic_str)

    def _mark_disconnected(self, error: BaseException | str | None) -> None:
        self._connected = False
        self._client = None
        metrics.set_mqtt_connected(False)
        if self.health is not None:
            self.health.mark_disconnected(error)

    @staticmethod
    def _topic_matches(topic: str, pattern: str) -> bool:
        topic_parts = topic.split("/")
        pattern_parts = pattern.split("/")
        for i, pat in enumerate(pattern_parts):
            if pat == "#":
                return True
            if i >= len(topic_parts):
                return False
            if pat != "+" and pat != topic_parts[i]:
                return False
        return len(topic_parts) == len(pattern_parts)
