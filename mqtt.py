"""
MQTT Transport for the Bridge
Keeps one aiomqtt session to the broker alive, announces the bridge state,
listens on the bridge config namespace and publishes outbound messages.
"""
import asyncio
import logging
from contextlib import suppress
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from aiomqtt import Client, Will

logger = logging.getLogger("mqtt")

MessageCallback = Callable[[str, bytes], Union[Awaitable[Any], Any]]

ONLINE = "online"
OFFLINE = "offline"

# Reconnect backoff bounds (seconds)
RECONNECT_MIN = 5
RECONNECT_MAX = 300


def _as_bytes(payload) -> bytes:
    if payload is None:
        return b""
    if isinstance(payload, (bytes, bytearray)):
        return bytes(payload)
    return str(payload).encode('utf-8')


class MQTTService:
    """
    Broker session with exponential reconnect backoff.

    Every message received under ``<base>/bridge/config/#`` is handed to
    ``message_callback(topic, payload_bytes)``; the callback may be sync or async.
    """

    def __init__(
        self,
        broker_host: str,
        port: int = 1883,
        username: Optional[str] = None,
        password: Optional[str] = None,
        base_topic: str = "zigbee2mqtt",
        qos: int = 0,
        message_callback: Optional[MessageCallback] = None,
    ):
        self.broker = broker_host
        self.port = port
        self.username = username
        self.password = password
        self.base_topic = base_topic
        self.default_qos = qos
        self.message_callback = message_callback

        self.client: Optional[Client] = None
        self._connected = False
        self._shutdown = False
        self._receiving = True
        self._reconnect_task: Optional[asyncio.Task] = None
        self._message_handler_task: Optional[asyncio.Task] = None

        self._reconnect_interval = RECONNECT_MIN
        self._reconnect_attempts = 0
        self._subscribed_topics: set = set()

        self.bridge_status_topic = f"{self.base_topic}/bridge/state"
        self.command_topic = f"{self.base_topic}/bridge/config/#"

    @property
    def connected(self) -> bool:
        return self._connected and self.client is not None

    # =========================================================================
    # SESSION
    # =========================================================================

    async def start(self):
        """Connect once; on failure keep retrying in the background."""
        self._shutdown = False
        self._receiving = True
        await self._connect()

    def _new_client(self) -> Client:
        return Client(
            hostname=self.broker,
            port=self.port,
            username=self.username,
            password=self.password,
            will=Will(self.bridge_status_topic, OFFLINE, qos=1, retain=True),
            clean_session=True,
            keepalive=60
        )

    async def _connect(self):
        logger.info(f"Connecting to MQTT broker {self.broker}:{self.port}...")
        await self._close_client()
        try:
            client = self._new_client()
            await client.__aenter__()
            self.client = client
            self._connected = True

            await self.client.publish(self.bridge_status_topic, ONLINE, qos=1, retain=True)
            await self._subscribe_to_topics()
        except Exception as e:
            self._connected = False
            logger.error(f"MQTT connection to {self.broker}:{self.port} failed: {e}")
            self._schedule_reconnect()
            return

        self._reconnect_attempts = 0
        self._reconnect_interval = RECONNECT_MIN
        logger.info(f"✓ Connected to {self.broker}:{self.port}, bridge state '{ONLINE}'")
        if self._receiving:
            self._message_handler_task = asyncio.create_task(self._handle_messages())

    async def _close_client(self):
        if self.client is None:
            return
        try:
            await self.client.__aexit__(None, None, None)
        except Exception as e:
            logger.debug(f"Error closing MQTT session: {e}")
        self.client = None

    def _schedule_reconnect(self):
        if self._shutdown:
            return

        self._reconnect_attempts += 1
        logger.warning(
            f"MQTT reconnect #{self._reconnect_attempts} in {self._reconnect_interval}s"
        )

        if self._reconnect_task is None or self._reconnect_task.done():
            self._reconnect_task = asyncio.create_task(self._reconnect_loop())

    async def _reconnect_loop(self):
        # Waits 5, 10, 20, 40, 80, 160, 300, 300...
        while not (self._shutdown or self._connected):
            await asyncio.sleep(self._reconnect_interval)
            self._reconnect_interval = min(self._reconnect_interval * 2, RECONNECT_MAX)
            if not self._shutdown:
                await self._connect()

    async def _subscribe_to_topics(self):
        await self.client.subscribe(self.command_topic, qos=1)
        self._subscribed_topics.add(self.command_topic)
        logger.info(f"Listening on {self.command_topic}")

    async def _handle_messages(self):
        """Forward inbound messages until the session drops."""
        if not self.client:
            return

        try:
            async for message in self.client.messages:
                topic = str(message.topic)
                payload = _as_bytes(message.payload)
                logger.debug(f"RX {topic}: {payload[:100]!r}")

                if not self.message_callback:
                    continue
                try:
                    result = self.message_callback(topic, payload)
                    if asyncio.iscoroutine(result):
                        await result
                except Exception as e:
                    logger.error(f"Message callback failed for {topic}: {e}")

        except asyncio.CancelledError:
            logger.debug("Message loop cancelled")
        except Exception as e:
            logger.error(f"MQTT session lost: {e}")
            self._connected = False
            self._schedule_reconnect()

    async def stop_receiving(self):
        """Stop forwarding inbound messages; the session stays up for publishing."""
        self._receiving = False
        task = self._message_handler_task
        self._message_handler_task = None
        if task:
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        logger.info("Stopped receiving bridge commands")

    async def stop(self):
        """Announce offline, cancel background tasks and close the session."""
        logger.info("Stopping MQTT service...")
        self._shutdown = True

        if self.connected:
            try:
                await self.client.publish(self.bridge_status_topic, OFFLINE, qos=1, retain=True)
            except Exception as e:
                logger.debug(f"Could not announce '{OFFLINE}': {e}")
        self._connected = False

        await self.stop_receiving()
        if self._reconnect_task:
            self._reconnect_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._reconnect_task

        await self._close_client()
        logger.info("MQTT service stopped")

    # =========================================================================
    # PUBLISHING
    # =========================================================================

    def full_topic(self, topic: str) -> str:
        if topic.startswith(f"{self.base_topic}/"):
            return topic
        return f"{self.base_topic}/{topic}"

    async def publish(self, topic: str, payload: str, qos: Optional[int] = None, retain: bool = False) -> bool:
        """
        Publish to ``topic`` (relative topics get the base topic prefixed).

        Returns:
            True once the client accepted the message, False otherwise
        """
        if not self.connected:
            logger.debug(f"Not connected, dropping publish to {topic}")
            return False

        qos = self.default_qos if qos is None else qos
        full_topic = self.full_topic(topic)

        try:
            await self.client.publish(full_topic, payload, retain=retain, qos=qos)
        except Exception as e:
            logger.error(f"Publish to {full_topic} failed: {e}")
            return False

        logger.debug(f"TX {full_topic} (qos={qos}, retain={retain}): {payload[:100]}")
        return True

    def get_status(self) -> Dict[str, Any]:
        return {
            "connected": self._connected,
            "broker": f"{self.broker}:{self.port}",
            "base_topic": self.base_topic,
            "reconnect_attempts": self._reconnect_attempts,
            "subscribed_topics": sorted(self._subscribed_topics),
        }
