"""
Network Control Facade
Narrow interface onto the zigpy ControllerApplication: pairing, soft reset,
group creation, device removal and device enumeration.

Every operation that touches the radio returns an OperationResult instead of
raising, so callers branch on success rather than catching exceptions.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

import zigpy.types

from error_handler import ErrorHandler, OperationResult, get_error_handler
from json_helpers import prepare_for_json

logger = logging.getLogger("network")

# zigpy caps permit duration at 254s; the bridge re-opens it on request
PERMIT_JOIN_DURATION = 254

COORDINATOR = "Coordinator"
ROUTER = "Router"
END_DEVICE = "EndDevice"
UNKNOWN = "Unknown"


@dataclass(frozen=True)
class DeviceSummary:
    """Compact view of a device known to the network stack."""
    ieee: str
    type: str
    network_address: Optional[int] = None
    friendly_name: Optional[str] = None
    model: Optional[str] = None
    model_id: Optional[str] = None
    manufacturer_id: Optional[int] = None
    manufacturer_name: Optional[str] = None
    power_source: Optional[str] = None
    last_seen: Optional[int] = None

    def to_payload(self) -> Dict[str, Any]:
        """Projection published on the device listing topic."""
        if self.type == COORDINATOR:
            return {"ieeeAddr": self.ieee, "type": COORDINATOR}

        payload: Dict[str, Any] = {
            "ieeeAddr": self.ieee,
            "type": self.type,
            "networkAddress": self.network_address,
            "friendly_name": self.friendly_name or self.ieee,
        }
        optional = {
            "model": self.model,
            "modelID": self.model_id,
            "manufacturerID": self.manufacturer_id,
            "manufacturerName": self.manufacturer_name,
            "powerSource": self.power_source,
            "lastSeen": self.last_seen,
        }
        payload.update({k: v for k, v in optional.items() if v is not None})
        return payload


def _device_role(device) -> str:
    if device.nwk == 0x0000:
        return COORDINATOR
    node_desc = getattr(device, 'node_desc', None)
    if node_desc is None:
        return UNKNOWN
    if getattr(node_desc, 'is_router', False):
        return ROUTER
    if getattr(node_desc, 'is_end_device', False):
        return END_DEVICE
    return UNKNOWN


def _power_source(device) -> Optional[str]:
    node_desc = getattr(device, 'node_desc', None)
    if node_desc is None:
        return None
    return "Mains (single phase)" if getattr(node_desc, 'is_mains_powered', False) else "Battery"


def _last_seen_ms(device) -> Optional[int]:
    last_seen = getattr(device, 'last_seen', None)
    if last_seen is None:
        return None
    if isinstance(last_seen, datetime):
        return int(last_seen.timestamp() * 1000)
    return int(float(last_seen) * 1000)


def summarise_device(device) -> DeviceSummary:
    """Build a DeviceSummary from a zigpy Device."""
    quirk = getattr(device, 'quirk_class', None)
    model = getattr(quirk, '__name__', None) if quirk is not None else None
    # Devices without a quirk report the plain zigpy Device class
    if model == "Device":
        model = None

    return DeviceSummary(
        ieee=str(device.ieee),
        type=_device_role(device),
        network_address=int(device.nwk),
        model=model,
        model_id=str(device.model) if device.model else None,
        manufacturer_id=getattr(device, 'manufacturer_id', None),
        manufacturer_name=str(device.manufacturer) if device.manufacturer else None,
        power_source=_power_source(device),
        last_seen=_last_seen_ms(device),
    )


class NetworkControl:
    """
    Pass-through to the Zigbee network stack.

    Args:
        app: A started zigpy ControllerApplication.
        radio_type: Radio library label reported as the coordinator type.
        error_handler: Captures failures into OperationResults.
    """

    def __init__(self, app, radio_type: str = "ezsp", error_handler: Optional[ErrorHandler] = None):
        self.app = app
        self.radio_type = radio_type
        self.error_handler = error_handler or get_error_handler()
        self._permit_join = False

    # =========================================================================
    # PAIRING
    # =========================================================================

    async def permit_join(self, permit: bool, duration: int = PERMIT_JOIN_DURATION) -> OperationResult:
        """Enable or disable joining network-wide (coordinator + all routers)."""
        time_s = duration if permit else 0
        result = await self.error_handler.run(
            self.app.permit, time_s, context=f"permit_join({permit})"
        )
        if result:
            self._permit_join = bool(permit)
            logger.info(f"Pairing {'enabled' if permit else 'disabled'}" +
                        (f" for {time_s}s" if permit else ""))
        return result

    def get_permit_join(self) -> bool:
        return self._permit_join

    # =========================================================================
    # RADIO
    # =========================================================================

    async def _soft_reset(self):
        await self.app.disconnect()
        await self.app.connect()
        await self.app.initialize(auto_form=False)

    async def soft_reset(self) -> OperationResult:
        """Reconnect to the radio without touching the network settings."""
        logger.info("Soft resetting coordinator...")
        result = await self.error_handler.run(self._soft_reset, context="soft_reset")
        if result:
            logger.info("Soft reset complete")
        return result

    def coordinator_info(self) -> Dict[str, Any]:
        """Coordinator type and firmware metadata as reported by the radio library."""
        meta: Dict[str, Any] = {}
        state = getattr(self.app, 'state', None)
        network_info = getattr(state, 'network_info', None)

        if network_info is not None:
            meta.update(getattr(network_info, 'metadata', None) or {})
            source = getattr(network_info, 'source', None)
            if source:
                meta["source"] = source

        return {"type": self.radio_type, "meta": prepare_for_json(meta)}

    # =========================================================================
    # GROUPS
    # =========================================================================

    async def _create_group(self, group_id: int, name: Optional[str]):
        return self.app.groups.add_group(group_id, name)

    async def create_group(self, group_id: int, name: Optional[str] = None) -> OperationResult:
        result = await self.error_handler.run(
            self._create_group, group_id, name, context=f"create_group({group_id})"
        )
        if result:
            logger.info(f"Created Zigbee group {group_id}" + (f" '{name}'" if name else ""))
        return result

    # =========================================================================
    # DEVICES
    # =========================================================================

    async def _remove(self, ieee: str):
        z_ieee = zigpy.types.EUI64.convert(str(ieee).lower())
        await self.app.remove(z_ieee)

    async def remove_from_network(self, ieee: str) -> OperationResult:
        """Ask the device to leave and drop it from the zigpy database."""
        logger.info(f"[{ieee}] Removing from network...")
        result = await self.error_handler.run(
            self._remove, ieee, context=f"remove_from_network({ieee})"
        )
        if result:
            logger.info(f"[{ieee}] Removed from network")
        return result

    def list_devices(self) -> List[DeviceSummary]:
        """All devices known to the stack, coordinator first."""
        summaries = [summarise_device(device) for device in self.app.devices.values()]
        summaries.sort(key=lambda s: s.type != COORDINATOR)
        return summaries
