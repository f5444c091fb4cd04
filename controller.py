"""
Bridge Controller
Builds every bridge component from configuration.yaml, starts the Zigbee
radio and wires MQTT commands through the single-writer command queue.
"""
import asyncio
import logging
import os
import time
from contextlib import suppress
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional

import zigpy.device
from bellows.zigbee.application import ControllerApplication

from bridge_config import BridgeConfigRouter
from bridge_info import BridgeInfo
from command_queue import CommandQueue
from error_handler import get_error_handler, get_error_stats
from log_config import LogSinks
from mqtt import MQTTService
from network import NetworkControl
from publisher import BusPublisher
from settings import SettingsError, SettingsStore
from state import DeviceStateCache

logger = logging.getLogger("controller")

DEFAULT_CONFIG_PATH = "./config/configuration.yaml"

AppFactory = Callable[[Dict[str, Any]], Awaitable[Any]]


def get_config_path() -> Path:
    return Path(os.environ.get("BRIDGE_CONFIG", DEFAULT_CONFIG_PATH))


async def start_radio(conf: Dict[str, Any]):
    """Create and start the bellows ControllerApplication."""
    return await ControllerApplication.new(
        config=conf,
        auto_form=True,
        start_radio=True
    )


class Controller:
    """
    Owns the bridge components and their lifecycle.

    Args:
        settings: SettingsStore backed by configuration.yaml.
        app_factory: Coroutine building a started zigpy application from a
            zigpy config dict. Defaults to the bellows (EZSP) radio.
        startup_attempts: Radio start attempts before giving up.
    """

    def __init__(self, settings: Optional[SettingsStore] = None,
                 app_factory: Optional[AppFactory] = None, startup_attempts: int = 12):
        self.settings = settings or SettingsStore(get_config_path())
        self.app_factory = app_factory or start_radio
        self.startup_attempts = startup_attempts

        config = self.settings.snapshot()
        self.config = config
        mqtt_conf = config["mqtt"]
        advanced = config["advanced"]
        self.base_topic = mqtt_conf["base_topic"]

        self.log_sinks = LogSinks(advanced.get("log_directory"), advanced["log_level"])
        self.mqtt = MQTTService(
            broker_host=mqtt_conf["server"],
            port=mqtt_conf["port"],
            username=mqtt_conf.get("user"),
            password=mqtt_conf.get("password"),
            base_topic=self.base_topic,
            qos=mqtt_conf.get("qos", 0),
            message_callback=self.on_message,
        )
        self.publisher = BusPublisher(self.mqtt, self.base_topic)
        self.state = DeviceStateCache(advanced.get("state_cache"))

        # Built once the radio is up
        self.app = None
        self.network: Optional[NetworkControl] = None
        self.bridge_info: Optional[BridgeInfo] = None
        self.router: Optional[BridgeConfigRouter] = None
        self.queue: Optional[CommandQueue] = None

        # Removals of non-whitelisted devices, keyed by IEEE
        self._pending: Dict[str, asyncio.Task] = {}

    # =========================================================================
    # ZIGBEE
    # =========================================================================

    def zigpy_config(self) -> Dict[str, Any]:
        serial = self.config["serial"]
        advanced = self.config["advanced"]

        network: Dict[str, Any] = {"channel": advanced.get("channel", 11)}
        if advanced.get("network_key"):
            network["key"] = advanced["network_key"]

        return {
            "device": {
                "path": serial["port"],
                "baudrate": serial.get("baudrate", 115200),
            },
            "database_path": advanced.get("database_path", "zigbee.db"),
            "network": network,
        }

    async def _start_zigbee(self):
        conf = self.zigpy_config()

        for attempt in range(self.startup_attempts):
            try:
                self.app = await self.app_factory(conf)
                logger.info(f"Zigbee network started on {conf['device']['path']}")
                return
            except Exception as e:
                logger.warning(f"Startup Attempt {attempt + 1} failed: {e}")
                await asyncio.sleep(2)

        raise RuntimeError(
            f"Failed to start Zigbee Radio after {self.startup_attempts} attempts. Check hardware."
        )

    def _register_device(self, ieee: str):
        try:
            self.settings.add_device(ieee)
        except SettingsError as e:
            logger.warning(f"[{ieee}] Could not register device: {e}")

    def is_allowed(self, ieee: str) -> bool:
        """An empty whitelist admits every device."""
        whitelist = self.settings.get().whitelist
        if not whitelist:
            return True
        return ieee.lower() in {entry.lower() for entry in whitelist}

    def _reject_device(self, ieee: str):
        if ieee in self._pending:
            return
        if self.network is None:
            logger.warning(f"[{ieee}] Not whitelisted, but the network is not ready to remove it")
            return
        logger.warning(f"[{ieee}] Not whitelisted, removing from network")
        self._pending[ieee] = asyncio.create_task(self._remove_rejected(ieee))

    async def _remove_rejected(self, ieee: str):
        try:
            result = await self.network.remove_from_network(ieee)
            if not result:
                logger.error(f"[{ieee}] Could not remove non-whitelisted device: {result.error}")
        finally:
            self._pending.pop(ieee, None)

    async def _cancel_pending(self):
        for task in list(self._pending.values()):
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task

    def register_known_devices(self):
        """Make sure every device in the zigpy database has a settings entry."""
        for ieee, device in self.app.devices.items():
            if device.nwk == 0x0000:
                continue
            if not self.is_allowed(str(ieee)):
                self._reject_device(str(ieee))
                continue
            self._register_device(str(ieee))

    # zigpy application listener callbacks

    def device_joined(self, device: zigpy.device.Device):
        ieee = str(device.ieee)
        logger.info(f"[{ieee}] Device joined (nwk=0x{device.nwk:04x})")
        self.state.set(ieee, {"nwk": device.nwk, "last_joined": int(time.time() * 1000)})
        if not self.is_allowed(ieee):
            self._reject_device(ieee)

    def device_initialized(self, device: zigpy.device.Device):
        ieee = str(device.ieee)
        if not self.is_allowed(ieee):
            self._reject_device(ieee)
            return
        logger.info(f"[{ieee}] Device initialized")
        self._register_device(ieee)

    def device_left(self, device: zigpy.device.Device):
        logger.info(f"[{device.ieee}] Device left the network")

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def on_message(self, topic: str, payload: bytes):
        if self.queue is None:
            logger.warning(f"Bridge not ready, dropping {topic}")
            return
        self.queue.submit_nowait(topic, payload)

    async def start(self):
        self.log_sinks.start()
        logger.info("Starting Zigbee bridge...")

        self.state.start()
        await self._start_zigbee()
        self.app.add_listener(self)

        radio_type = self.config["serial"].get("radio_type", "ezsp")
        self.network = NetworkControl(self.app, radio_type, get_error_handler())
        self.bridge_info = BridgeInfo(self.settings, self.network, self.publisher, self.log_sinks)
        self.router = BridgeConfigRouter(
            self.settings, self.network, self.publisher, self.state,
            self.log_sinks, self.bridge_info, self.base_topic
        )
        self.queue = CommandQueue(self.router)

        self.register_known_devices()
        await self.queue.start()

        # Non-blocking: reconnects in the background if the broker is down
        await self.mqtt.start()

        permit = self.settings.get().permit_join
        result = await self.network.permit_join(permit)
        if not result:
            logger.warning(f"Could not apply permit_join={permit} at startup: {result.error}")

        await self.bridge_info.publish_startup()
        logger.info("Zigbee bridge started")

    async def stop(self):
        logger.info("Shutting down Zigbee bridge...")
        # Drained commands still publish their results before the session closes
        await self.mqtt.stop_receiving()
        if self.queue:
            await self.queue.stop()
        await self.mqtt.stop()
        await self._cancel_pending()
        await self.state.stop()

        if self.app:
            try:
                await self.app.shutdown()
                logger.info("Zigbee network stopped")
            except Exception as e:
                logger.error(f"Error shutting down Zigbee network: {e}")

        self.log_sinks.stop()

    def get_status(self) -> Dict[str, Any]:
        return {
            "mqtt": self.mqtt.get_status(),
            "queue": self.queue.get_stats() if self.queue else None,
            "publisher": self.publisher.get_stats(),
            "errors": get_error_stats(),
        }
