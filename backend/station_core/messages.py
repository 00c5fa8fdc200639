"""OCPP 1.6J framing helpers: payload dataclass <-> wire dict, timestamps, frame type names."""
import json
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any

from ocpp.charge_point import camel_to_snake_case, remove_nones, snake_to_camel_case

# OCPP message type IDs: Call=2, CallResult=3, CallError=4
CALL = 2
CALL_RESULT = 3
CALL_ERROR = 4

_PAYLOAD_SUFFIX = "Payload"


def utc_timestamp() -> str:
    """Current UTC time in OCPP format, millisecond precision (e.g. 2025-01-01T12:00:00.000Z)."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


def action_name(payload: Any) -> str:
    """Action for an ocpp.v16 call payload dataclass (StartTransactionPayload -> StartTransaction)."""
    name = type(payload).__name__
    if name.endswith(_PAYLOAD_SUFFIX):
        return name[: -len(_PAYLOAD_SUFFIX)]
    return name


def to_wire(payload: Any) -> dict:
    """Serialize an ocpp.v16 payload dataclass to a camelCase dict without None fields."""
    return remove_nones(snake_to_camel_case(asdict(payload)))


def from_wire(payload: Any) -> dict:
    """camelCase wire payload -> snake_case dict (non-dict payloads become {})."""
    if not isinstance(payload, dict):
        return {}
    return camel_to_snake_case(payload)


def parse_message_type(raw: str) -> str:
    """Extract message type (action name or CallResult/CallError) from a raw JSON frame."""
    try:
        arr = json.loads(raw)
        if not isinstance(arr, list) or len(arr) < 3:
            return "Unknown"
        msg_type_id = arr[0]
        if msg_type_id == CALL:
            return str(arr[2]) if len(arr) > 2 else "Call"
        if msg_type_id == CALL_RESULT:
            return "CallResult"
        if msg_type_id == CALL_ERROR:
            return "CallError"
        return "Unknown"
    except (json.JSONDecodeError, TypeError):
        return "Unknown"


def id_tag_accepted(payload: dict) -> bool:
    """True if a snake_case conf payload carries id_tag_info.status == Accepted."""
    info = payload.get("id_tag_info") or {}
    status = info.get("status") if isinstance(info, dict) else None
    return isinstance(status, str) and status.lower() == "accepted"
