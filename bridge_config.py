"""
Bridge Config Commands
======================
Handles administrative commands published to ``<base>/bridge/config/<command>``.

Each command validates its payload, applies it to the settings store and/or
the network facade, and reports the outcome on the bus. A malformed payload,
an unknown target or a failed network operation leaves state untouched and
publishes nothing.
"""
import dataclasses
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Union

from pydantic import BaseModel, ValidationError

from network import COORDINATOR
from settings import LOG_LEVELS, SettingsError

logger = logging.getLogger("bridge_config")


class BridgeCommand(str, Enum):
    ELAPSED = "elapsed"
    WHITELIST = "whitelist"
    DEVICE_OPTIONS = "device_options"
    PERMIT_JOIN = "permit_join"
    RESET = "reset"
    LAST_SEEN = "last_seen"
    LOG_LEVEL = "log_level"
    DEVICES_GET = "devices/get"
    GROUPS = "groups"
    RENAME = "rename"
    ADD_GROUP = "add_group"
    REMOVE_GROUP = "remove_group"
    REMOVE = "remove"
    BAN = "ban"
    UNRECOGNIZED = ""


# Listing commands also answer on "<command>/get"
LISTINGS = {
    "groups": BridgeCommand.GROUPS,
    "devices": BridgeCommand.DEVICES_GET,
}


def resolve_command(path: str) -> BridgeCommand:
    """Map the topic path after ``bridge/config/`` to a command."""
    if path:
        try:
            return BridgeCommand(path)
        except ValueError:
            pass

    head, sep, tail = path.partition("/")
    if sep and tail == "get" and head in LISTINGS:
        return LISTINGS[head]

    return BridgeCommand.UNRECOGNIZED


# =============================================================================
# PAYLOAD MODELS
# =============================================================================

class DeviceOptionsRequest(BaseModel):
    friendly_name: str
    options: Dict[str, Any]


class RenameRequest(BaseModel):
    old: str
    new: str


# =============================================================================
# ROUTER
# =============================================================================

class BridgeConfigRouter:
    """
    Dispatches bridge config commands to their handlers.

    Args:
        settings: SettingsStore holding the device/group registry.
        network: NetworkControl over the Zigbee stack.
        publisher: BusPublisher for log events and listings.
        state: DeviceStateCache with runtime device state.
        log_sinks: LogSinks whose level ``log_level`` changes.
        bridge_info: BridgeInfo republished after pairing and log level changes.
        base_topic: Root of the bridge namespace.
    """

    def __init__(self, settings, network, publisher, state=None, log_sinks=None,
                 bridge_info=None, base_topic: str = "zigbee2mqtt"):
        self.settings = settings
        self.network = network
        self.publisher = publisher
        self.state = state
        self.log_sinks = log_sinks
        self.bridge_info = bridge_info
        self.base_topic = base_topic
        self.prefix = f"{base_topic}/bridge/config/"

        self._handlers: Dict[BridgeCommand, Callable[[str], Awaitable[None]]] = {
            BridgeCommand.ELAPSED: self.elapsed,
            BridgeCommand.WHITELIST: self.whitelist,
            BridgeCommand.DEVICE_OPTIONS: self.device_options,
            BridgeCommand.PERMIT_JOIN: self.permit_join,
            BridgeCommand.RESET: self.reset,
            BridgeCommand.LAST_SEEN: self.last_seen,
            BridgeCommand.LOG_LEVEL: self.log_level,
            BridgeCommand.DEVICES_GET: self.devices_get,
            BridgeCommand.GROUPS: self.groups,
            BridgeCommand.RENAME: self.rename,
            BridgeCommand.ADD_GROUP: self.add_group,
            BridgeCommand.REMOVE_GROUP: self.remove_group,
            BridgeCommand.REMOVE: self.remove,
            BridgeCommand.BAN: self.ban,
        }

    async def handle(self, topic: str, payload: Union[bytes, str, None]) -> None:
        """Entry point for every message under the bridge config namespace."""
        if not topic.startswith(self.prefix):
            return

        command = resolve_command(topic[len(self.prefix):])
        handler = self._handlers.get(command)
        if handler is None:
            logger.debug(f"Ignoring unsupported bridge config topic {topic}")
            return

        if payload is None:
            message = ""
        elif isinstance(payload, (bytes, bytearray)):
            try:
                message = bytes(payload).decode('utf-8')
            except UnicodeDecodeError:
                logger.warning(f"Ignoring {command.value}: payload is not valid UTF-8")
                return
        else:
            message = str(payload)

        try:
            await handler(message)
        except Exception as e:
            logger.error(f"Bridge config '{command.value}' failed: {e}", exc_info=True)

    # =========================================================================
    # GLOBAL OPTIONS
    # =========================================================================

    async def elapsed(self, message: str):
        value = message == "true"
        self.settings.set_elapsed(value)
        logger.info(f"Set elapsed to {value}")

    async def last_seen(self, message: str):
        try:
            self.settings.set_last_seen(message)
        except ValueError as e:
            logger.error(str(e))
            return
        logger.info(f"Set last_seen to {message}")

    async def log_level(self, message: str):
        level = message.lower()
        if level not in LOG_LEVELS:
            logger.error(f"Invalid log level '{message}', allowed: {', '.join(LOG_LEVELS)}")
            return

        if self.log_sinks is not None:
            self.log_sinks.set_level(level)
        self.settings.set_log_level(level)
        logger.info(f"Switched log level to '{level}'")
        await self._republish_bridge_info()

    async def permit_join(self, message: str):
        permit = message == "true"
        result = await self.network.permit_join(permit)
        if not result:
            logger.error(f"Failed to {'enable' if permit else 'disable'} joining: {result.error}")
            return

        self.settings.set_permit_join(permit)
        await self._republish_bridge_info()

    async def reset(self, message: str):
        result = await self.network.soft_reset()
        if not result:
            logger.error(f"Soft reset failed: {result.error}")

    async def _republish_bridge_info(self):
        if self.bridge_info is not None:
            await self.bridge_info.publish()

    # =========================================================================
    # DEVICES
    # =========================================================================

    async def whitelist(self, message: str):
        device = self.settings.get_device(message)
        if device is None:
            logger.error(f"Failed to whitelist '{message}', device does not exist")
            return

        if not self.settings.add_device_to_whitelist(device["ID"]):
            logger.info(f"[{device['ID']}] Already whitelisted")
            return

        logger.info(f"[{device['ID']}] Whitelisted '{device['friendly_name']}'")
        await self.publisher.log("device_whitelisted", {"friendly_name": device["friendly_name"]})

    async def device_options(self, message: str):
        try:
            request = DeviceOptionsRequest.model_validate_json(message)
        except ValidationError as e:
            logger.warning(f"Invalid device_options payload '{message}': {e.error_count()} error(s)")
            return

        try:
            device = self.settings.change_device_options(request.friendly_name, request.options)
        except SettingsError as e:
            logger.error(f"Failed to change device options: {e}")
            return

        logger.info(f"[{device['ID']}] Changed options to {request.options}")

    def device_listing(self) -> List[Dict[str, Any]]:
        """Coordinator plus every device, with friendly names from settings."""
        listing = []
        for summary in self.network.list_devices():
            if summary.type != COORDINATOR:
                entry = self.settings.get_device(summary.ieee)
                if entry is not None:
                    summary = dataclasses.replace(summary, friendly_name=entry["friendly_name"])
            listing.append(summary.to_payload())
        return listing

    async def devices_get(self, message: str):
        await self.publisher.publish(self.publisher.bridge_topic("config/devices"), self.device_listing())

    async def rename(self, message: str):
        try:
            request = RenameRequest.model_validate_json(message)
        except ValidationError as e:
            logger.warning(f"Invalid rename payload '{message}': {e.error_count()} error(s)")
            return

        try:
            self.settings.change_friendly_name(request.old, request.new)
        except SettingsError as e:
            logger.error(f"Failed to rename '{request.old}' to '{request.new}': {e}")
            return

        await self.publisher.log("device_renamed", {"from": request.old, "to": request.new})

    async def remove(self, message: str):
        await self._remove_device(message, "device_removed")

    async def ban(self, message: str):
        # TODO: persist banned IEEEs and reject them on join; ban only removes for now
        await self._remove_device(message, "device_banned")

    async def _remove_device(self, message: str, event: str):
        device = self.settings.get_device(message)
        if device is None:
            logger.error(f"Failed to remove '{message}', device does not exist")
            return

        ieee = device["ID"]
        name = device["friendly_name"]
        result = await self.network.remove_from_network(ieee)
        if not result:
            logger.error(f"[{ieee}] Failed to remove '{name}' from network: {result.error}")
            return

        self.settings.remove_device(ieee)
        if self.state is not None:
            self.state.remove(ieee)

        logger.info(f"[{ieee}] Removed '{name}' ({event})")
        await self.publisher.log(event, name)

    # =========================================================================
    # GROUPS
    # =========================================================================

    async def groups(self, message: str):
        await self.publisher.log("groups", self.settings.get_groups())

    async def add_group(self, message: str):
        try:
            group = self.settings.add_group(message)
        except SettingsError as e:
            logger.error(f"Failed to add group '{message}': {e}")
            return

        result = await self.network.create_group(group["ID"], group["friendly_name"])
        if not result:
            self.settings.remove_group(group["ID"])
            logger.error(f"Failed to create group {group['ID']} '{message}': {result.error}")
            return

        logger.info(f"Added group {group['ID']} '{message}'")

    async def remove_group(self, message: str):
        if not self.settings.remove_group(message):
            logger.warning(f"Group '{message}' does not exist, nothing removed")
            return
        logger.info(f"Removed group '{message}'")
