"""
Settings Store
==============
Typed read/write access to the persisted bridge configuration.

The store owns:
- Global runtime options (log level, elapsed flag, last_seen mode, permit_join)
- The device registry (IEEE -> friendly name + per-device options)
- The group registry (numeric ID -> friendly name + members + options)
- The whitelist

Every mutation is applied to a working copy, written to disk and only then
swapped in, so a rejected or failed mutation never leaves a partial change
behind. Reads always reflect the last committed write.
"""
import copy
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

from yaml_loader import load_yaml_config, save_yaml_config

logger = logging.getLogger("settings")

LOG_LEVELS = ("error", "warn", "info", "debug")
LAST_SEEN_MODES = ("disable", "ISO_8601", "ISO_8601_local", "epoch")

DEFAULTS: Dict[str, Any] = {
    "permit_join": False,
    "mqtt": {
        "base_topic": "zigbee2mqtt",
        "server": "localhost",
        "port": 1883,
        "user": None,
        "password": None,
        "qos": 0,
    },
    "serial": {
        "port": "/dev/ttyUSB0",
        "radio_type": "ezsp",
        "baudrate": 115200,
    },
    "advanced": {
        "log_level": "info",
        "log_directory": "logs",
        "elapsed": False,
        "last_seen": "disable",
        "database_path": "zigbee.db",
        "state_cache": "state.json",
        "network_key": None,
        "channel": 11,
    },
    "frontend": {
        "host": "0.0.0.0",
        "port": 8080,
    },
    "whitelist": [],
    "devices": {},
    "groups": {},
}

# Keys that identify an entry and can't be overwritten through options
PROTECTED_KEYS = ("ID", "friendly_name")


class SettingsError(Exception):
    """Raised when a settings mutation conflicts with the current registry."""
    pass


@dataclass(frozen=True)
class GlobalOptions:
    base_topic: str
    log_level: str
    elapsed: bool
    last_seen: str
    permit_join: bool
    whitelist: Tuple[str, ...] = field(default_factory=tuple)


def _merge(defaults: Dict[str, Any], data: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(defaults)
    for key, value in (data or {}).items():
        if value is None and isinstance(merged.get(key), (dict, list)):
            # Empty YAML sections load as None
            continue
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


class SettingsStore:
    """
    Single-writer store for the bridge configuration.

    Args:
        path: YAML file backing the store. When None the store is memory-only.
        data: Initial raw configuration (used instead of reading ``path``).
    """

    def __init__(self, path: Optional[Path] = None, data: Optional[Dict[str, Any]] = None):
        self.path = Path(path) if path else None
        self._lock = threading.RLock()
        self._data: Dict[str, Any] = {}

        if data is not None:
            self._data = copy.deepcopy(data)
        else:
            self.reread()

    # =========================================================================
    # PERSISTENCE
    # =========================================================================

    def reread(self):
        """Reload the configuration from disk, dropping in-memory state."""
        with self._lock:
            if self.path and self.path.exists():
                self._data = load_yaml_config(self.path)
                logger.info(
                    f"Loaded settings from {self.path}: "
                    f"{len(self._data.get('devices') or {})} devices, "
                    f"{len(self._data.get('groups') or {})} groups"
                )
            else:
                self._data = {}
                logger.info("No settings file found, using defaults")

    def _commit(self, data: Dict[str, Any]):
        if self.path:
            save_yaml_config(self.path, data)
        self._data = data

    @contextmanager
    def _transaction(self) -> Iterator[Dict[str, Any]]:
        """Yield a working copy of the raw data; commit it if the body succeeds."""
        with self._lock:
            data = copy.deepcopy(self._data)
            for section in ("devices", "groups", "advanced"):
                if not data.get(section):
                    data[section] = {}
            yield data
            self._commit(data)

    # =========================================================================
    # READS
    # =========================================================================

    def snapshot(self) -> Dict[str, Any]:
        """Full configuration with defaults applied (deep copy)."""
        with self._lock:
            return _merge(DEFAULTS, self._data)

    def get(self) -> GlobalOptions:
        with self._lock:
            merged = _merge(DEFAULTS, self._data)
        advanced = merged["advanced"]
        return GlobalOptions(
            base_topic=merged["mqtt"]["base_topic"],
            log_level=advanced["log_level"],
            elapsed=bool(advanced["elapsed"]),
            last_seen=advanced["last_seen"],
            permit_join=bool(merged["permit_join"]),
            whitelist=tuple(merged["whitelist"] or ()),
        )

    @staticmethod
    def _find_device(data: Dict[str, Any], id_or_name: str) -> Tuple[Optional[str], Optional[Dict]]:
        devices = data.get("devices") or {}
        key = str(id_or_name)

        if key in devices:
            return key, devices[key]
        for ieee, entry in devices.items():
            if str(ieee).lower() == key.lower():
                return ieee, entry
        for ieee, entry in devices.items():
            if (entry or {}).get("friendly_name") == key:
                return ieee, entry
        return None, None

    @staticmethod
    def _find_group(data: Dict[str, Any], id_or_name) -> Tuple[Optional[Any], Optional[Dict]]:
        groups = data.get("groups") or {}
        key = str(id_or_name)

        for group_id, entry in groups.items():
            if str(group_id) == key:
                return group_id, entry
        for group_id, entry in groups.items():
            if (entry or {}).get("friendly_name") == key:
                return group_id, entry
        return None, None

    @staticmethod
    def _device_view(ieee: str, entry: Optional[Dict]) -> Dict[str, Any]:
        view: Dict[str, Any] = {"ID": ieee}
        view.update(copy.deepcopy(entry or {}))
        view.setdefault("friendly_name", ieee)
        return view

    @staticmethod
    def _group_view(group_id, entry: Optional[Dict]) -> Dict[str, Any]:
        view: Dict[str, Any] = {"ID": int(group_id), "devices": [], "optimistic": True}
        view.update(copy.deepcopy(entry or {}))
        view.setdefault("friendly_name", f"group_{group_id}")
        return view

    def get_device(self, id_or_name: str) -> Optional[Dict[str, Any]]:
        """Resolve a device by IEEE or friendly name. Returns None if unknown."""
        with self._lock:
            ieee, entry = self._find_device(self._data, id_or_name)
            if ieee is None:
                return None
            return self._device_view(ieee, entry)

    def get_devices(self) -> List[Dict[str, Any]]:
        with self._lock:
            devices = self._data.get("devices") or {}
            return [self._device_view(ieee, entry) for ieee, entry in devices.items()]

    def get_group(self, id_or_name) -> Optional[Dict[str, Any]]:
        """Resolve a group by numeric ID or friendly name. Returns None if unknown."""
        with self._lock:
            group_id, entry = self._find_group(self._data, id_or_name)
            if group_id is None:
                return None
            return self._group_view(group_id, entry)

    def get_groups(self) -> List[Dict[str, Any]]:
        with self._lock:
            groups = self._data.get("groups") or {}
            return [
                self._group_view(group_id, entry)
                for group_id, entry in sorted(groups.items(), key=lambda item: int(item[0]))
            ]

    def is_name_in_use(self, name: str) -> bool:
        """Friendly names are unique across devices and groups."""
        with self._lock:
            return self._name_in_use(self._data, name)

    @staticmethod
    def _name_in_use(data: Dict[str, Any], name: str) -> bool:
        for entry in (data.get("devices") or {}).values():
            if (entry or {}).get("friendly_name") == name:
                return True
        for entry in (data.get("groups") or {}).values():
            if (entry or {}).get("friendly_name") == name:
                return True
        return False

    # =========================================================================
    # DEVICE REGISTRY
    # =========================================================================

    def add_device(self, ieee: str, friendly_name: Optional[str] = None) -> Dict[str, Any]:
        """Register a device seen on the network. Existing entries are returned unchanged."""
        ieee = str(ieee)
        existing = self.get_device(ieee)
        if existing:
            return existing

        name = friendly_name or ieee
        with self._transaction() as data:
            if self._name_in_use(data, name):
                raise SettingsError(f"Friendly name '{name}' is already in use")
            data["devices"][ieee] = {"friendly_name": name}

        logger.info(f"[{ieee}] Added device to settings as '{name}'")
        return self.get_device(ieee)

    def remove_device(self, id_or_name: str) -> bool:
        """Delete a device entry and drop it from every group's member list."""
        with self._lock:
            ieee, entry = self._find_device(self._data, id_or_name)
            if ieee is None:
                return False

            name = (entry or {}).get("friendly_name")
            with self._transaction() as data:
                del data["devices"][ieee]

                for group in data["groups"].values():
                    members = (group or {}).get("devices")
                    if members:
                        group["devices"] = [m for m in members if m not in (ieee, name)]

        logger.info(f"[{ieee}] Removed device '{name}' from settings")
        return True

    def change_device_options(self, id_or_name: str, options: Dict[str, Any]) -> Dict[str, Any]:
        """Merge option overrides into a device entry."""
        with self._transaction() as data:
            ieee, entry = self._find_device(data, id_or_name)
            if ieee is None:
                raise SettingsError(f"Device '{id_or_name}' does not exist")

            entry = data["devices"][ieee] = dict(entry or {})
            for key, value in options.items():
                if key in PROTECTED_KEYS:
                    logger.warning(f"[{ieee}] Ignoring protected option '{key}'")
                    continue
                entry[key] = value

        return self.get_device(ieee)

    def add_device_to_whitelist(self, ieee: str) -> bool:
        """Append to the whitelist. Returns False if it was already present."""
        with self._lock:
            if ieee in (self._data.get("whitelist") or []):
                return False
            with self._transaction() as data:
                data["whitelist"] = list(data.get("whitelist") or []) + [ieee]
        return True

    # =========================================================================
    # GROUP REGISTRY
    # =========================================================================

    def add_group(self, name: str) -> Dict[str, Any]:
        """Create a group with the next free ID (max existing + 1)."""
        if not name:
            raise SettingsError("Group name can't be empty")

        with self._transaction() as data:
            if self._name_in_use(data, name):
                raise SettingsError(f"Friendly name '{name}' is already in use")

            ids = [int(group_id) for group_id in data["groups"]]
            group_id = max(ids) + 1 if ids else 1
            data["groups"][str(group_id)] = {"friendly_name": name}

        logger.info(f"Added group {group_id} '{name}' to settings")
        return self.get_group(group_id)

    def remove_group(self, id_or_name) -> bool:
        with self._lock:
            group_id, _ = self._find_group(self._data, id_or_name)
            if group_id is None:
                return False
            with self._transaction() as data:
                del data["groups"][group_id]

        logger.info(f"Removed group {group_id} from settings")
        return True

    # =========================================================================
    # SHARED
    # =========================================================================

    def change_friendly_name(self, old: str, new: str) -> Dict[str, Any]:
        """Rename a device or group in place, keeping its ID and options."""
        if not new:
            raise SettingsError("Friendly name can't be empty")

        with self._transaction() as data:
            if self._name_in_use(data, new):
                raise SettingsError(f"Friendly name '{new}' is already in use")

            ieee, entry = self._find_device(data, old)
            if ieee is not None:
                data["devices"][ieee] = {**(entry or {}), "friendly_name": new}
                resolved = ("device", ieee)
            else:
                group_id, entry = self._find_group(data, old)
                if group_id is None:
                    raise SettingsError(f"Device or group '{old}' does not exist")
                data["groups"][group_id] = {**(entry or {}), "friendly_name": new}
                resolved = ("group", group_id)

        logger.info(f"Renamed {resolved[0]} {resolved[1]} from '{old}' to '{new}'")
        if resolved[0] == "device":
            return self.get_device(resolved[1])
        return self.get_group(resolved[1])

    # =========================================================================
    # GLOBAL OPTIONS
    # =========================================================================

    def set_elapsed(self, value: bool):
        with self._transaction() as data:
            data["advanced"]["elapsed"] = bool(value)

    def set_last_seen(self, mode: str):
        if mode not in LAST_SEEN_MODES:
            raise ValueError(f"Invalid last_seen mode '{mode}', allowed: {', '.join(LAST_SEEN_MODES)}")
        with self._transaction() as data:
            data["advanced"]["last_seen"] = mode

    def set_log_level(self, level: str):
        if level not in LOG_LEVELS:
            raise ValueError(f"Invalid log level '{level}', allowed: {', '.join(LOG_LEVELS)}")
        with self._transaction() as data:
            data["advanced"]["log_level"] = level

    def set_permit_join(self, value: bool):
        with self._transaction() as data:
            data["permit_join"] = bool(value)
