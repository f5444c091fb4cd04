"""
Bus Publisher
Serialises outbound bridge messages and hands them to the MQTT transport.

Every publish reports its outcome exactly once through an optional callback:
None on delivery, a DeliveryError otherwise.
"""
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

from error_handler import DeliveryError
from json_helpers import safe_json_dumps

logger = logging.getLogger("publisher")

DeliveryCallback = Callable[[Optional[Exception]], None]


@dataclass(frozen=True)
class OutboundMessage:
    topic: str
    payload: Any
    retain: bool = False
    qos: int = 0

    def encoded(self) -> str:
        if isinstance(self.payload, str):
            return self.payload
        return safe_json_dumps(self.payload)


class BusPublisher:
    """
    Thin publishing layer over MQTTService.

    Args:
        mqtt_service: Anything with ``async publish(topic, payload, qos, retain) -> bool``.
        base_topic: Root of the bridge namespace, e.g. ``zigbee2mqtt``.
    """

    def __init__(self, mqtt_service, base_topic: str = "zigbee2mqtt"):
        self.mqtt = mqtt_service
        self.base_topic = base_topic
        self.sent = 0
        self.failed = 0

    def bridge_topic(self, subtopic: str = "") -> str:
        if not subtopic:
            return f"{self.base_topic}/bridge"
        return f"{self.base_topic}/bridge/{subtopic}"

    async def publish(
        self,
        topic: str,
        payload: Any,
        retain: bool = False,
        qos: int = 0,
        callback: Optional[DeliveryCallback] = None,
    ) -> bool:
        """Publish a message. Returns True when the transport accepted it."""
        return await self.send(OutboundMessage(topic, payload, retain, qos), callback)

    async def send(self, message: OutboundMessage, callback: Optional[DeliveryCallback] = None) -> bool:
        error: Optional[Exception] = None
        try:
            encoded = message.encoded()
        except (TypeError, ValueError) as e:
            error = DeliveryError(f"Payload for {message.topic} is not serialisable: {e}")

        if error is None:
            try:
                if not await self.mqtt.publish(message.topic, encoded, qos=message.qos, retain=message.retain):
                    error = DeliveryError(f"Publish to {message.topic} was not delivered")
            except Exception as e:
                error = DeliveryError(f"Publish to {message.topic} failed: {e}")

        if error is None:
            self.sent += 1
            logger.debug(f"Published {message.topic} (retain={message.retain}, qos={message.qos})")
        else:
            self.failed += 1
            logger.warning(str(error))

        if callback is not None:
            try:
                callback(error)
            except Exception as e:
                logger.error(f"Delivery callback for {message.topic} raised: {e}")

        return error is None

    async def log(self, type: str, message: Any, callback: Optional[DeliveryCallback] = None) -> bool:
        """Emit a structured log event on ``<base>/bridge/log``."""
        return await self.publish(
            self.bridge_topic("log"), {"type": type, "message": message}, callback=callback
        )

    def get_stats(self):
        return {"sent": self.sent, "failed": self.failed}
