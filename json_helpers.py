"""
JSON Serialisation Helpers for Bus Payloads
===========================================
Serialisation utilities for everything that leaves the bridge as JSON:
log events, device listings, the bridge summary and the state cache.

Handles zigpy types that aren't natively JSON-serialisable:
1. Address types (EUI64 -> "00:11:...", NWK -> int)
2. Recursive handling of nested structures (dicts, lists)
3. Enums, datetimes, bytes and dataclasses
"""
import dataclasses
import json
import logging
from datetime import datetime, date
from enum import Enum
from typing import Any

logger = logging.getLogger("json_helpers")


def serialise_value(value: Any) -> Any:
    """
    Recursively serialise a value to be JSON-compatible.

    Args:
        value: Any value that needs to be JSON-serialisable

    Returns:
        JSON-serialisable representation of the value
    """
    if value is None:
        return None

    # EUI64 is a list subclass in zigpy, it must win over the list branch
    if 'EUI64' in value.__class__.__name__:
        return str(value)

    # Enums before ints: zigpy enums subclass int
    if isinstance(value, Enum):
        return serialise_value(value.value)

    if isinstance(value, (str, bool)):
        return value

    # NWK and the other zigpy uint types are int subclasses
    if isinstance(value, int):
        return int(value)

    if isinstance(value, float):
        return value

    if isinstance(value, bytes):
        try:
            return value.decode('utf-8')
        except UnicodeDecodeError:
            return value.hex()

    if isinstance(value, (datetime, date)):
        return value.isoformat()

    if isinstance(value, dict):
        return {serialise_key(k): serialise_value(v) for k, v in value.items()}

    if isinstance(value, (list, tuple, set)):
        return [serialise_value(item) for item in value]

    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return serialise_value(dataclasses.asdict(value))

    # Last resort: convert to string
    try:
        return str(value)
    except Exception as e:
        logger.warning(f"Failed to serialise {type(value).__name__}: {e}")
        return f"<{type(value).__name__}>"


def serialise_key(key: Any) -> str:
    """
    Convert any key type to a string for JSON dict keys.

    Args:
        key: Dictionary key of any type

    Returns:
        String representation suitable for JSON
    """
    if key is None:
        return "null"

    if isinstance(key, str):
        return key

    if isinstance(key, Enum):
        return str(key.value)

    if isinstance(key, bytes):
        return key.hex()

    # Numeric keys, EUI64 and everything else
    return str(key)


def prepare_for_json(data: Any) -> Any:
    """
    Prepare data structure for JSON serialisation.

    Use this before json.dumps(), FastAPI responses or file dumps.
    """
    return serialise_value(data)


def safe_json_dumps(obj: Any, **kwargs) -> str:
    """
    Serialise any object to a JSON string, handling zigpy types.

    Args:
        obj: Object to serialise
        **kwargs: Additional arguments to pass to json.dumps

    Returns:
        JSON string

    Raises:
        TypeError / ValueError: If the prepared value still can't be encoded
    """
    return json.dumps(prepare_for_json(obj), **kwargs)
