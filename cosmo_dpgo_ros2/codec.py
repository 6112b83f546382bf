"""Encode/decode helpers for coordination messages.

Every message travels as one JSON document ``{"version", "type", "message"}``
so that a single ``UInt8MultiArray`` topic per channel is enough and the
helpers can be exercised without ROS 2 installed.
"""

from __future__ import annotations

from dataclasses import fields, is_dataclass
from enum import Enum
import json
import logging
from typing import Any, Dict

import numpy as np

from cosmo_dpgo.messages import (
    Anchor,
    AnchorRequest,
    Command,
    LiftingMatrixRequest,
    LiftingMatrixResponse,
    MeasurementWeight,
    MeasurementWeights,
    PublicPose,
    PublicPoses,
    Status,
)

logger = logging.getLogger("cosmo_dpgo_ros2.codec")

CODEC_VERSION = 1

_MESSAGE_TYPES = {
    cls.__name__: cls
    for cls in (
        Command,
        Status,
        PublicPoses,
        MeasurementWeights,
        Anchor,
        LiftingMatrixRequest,
        LiftingMatrixResponse,
        AnchorRequest,
    )
}

# list-valued fields holding nested dataclasses
_NESTED = {
    ("PublicPoses", "poses"): PublicPose,
    ("MeasurementWeights", "weights"): MeasurementWeight,
}


def message_sender(msg: Any) -> int:
    """AgentID of the agent that published ``msg``."""

    for attr in ("publishing_agent", "agent_id", "sender", "requester", "owner"):
        if hasattr(msg, attr):
            return int(getattr(msg, attr))
    raise TypeError(f"Cannot determine sender of {type(msg)!r}")


def _to_jsonable(value: Any) -> Any:
    if is_dataclass(value):
        return {f.name: _to_jsonable(getattr(value, f.name)) for f in fields(value)}
    if isinstance(value, np.ndarray):
        return value.tolist()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (set, frozenset)):
        return sorted(int(v) for v in value)
    if isinstance(value, (list, tuple)):
        return [_to_jsonable(v) for v in value]
    if isinstance(value, (np.integer,)):
        return int(value)
    if isinstance(value, (np.floating,)):
        return float(value)
    return value


def encode_message(msg: Any, *, version: int = CODEC_VERSION) -> bytes:
    """Encode a coordination message into a compact JSON payload."""

    type_name = type(msg).__name__
    if type_name not in _MESSAGE_TYPES:
        raise TypeError(f"Unsupported message type {type(msg)!r}")
    payload: Dict[str, Any] = {
        "version": version,
        "type": type_name,
        "message": _to_jsonable(msg),
    }
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=True).encode("utf-8")


def decode_message(data: Any) -> Any:
    """Decode bytes produced by :func:`encode_message`."""

    if isinstance(data, (bytes, bytearray)):
        data = data.decode("utf-8")
    try:
        doc = json.loads(data)
    except json.JSONDecodeError as exc:
        raise ValueError(f"Malformed message payload: {exc}") from exc
    version = doc.get("version", CODEC_VERSION)
    if version != CODEC_VERSION:
        logger.warning("Unknown message version %s; attempting fallback decode", version)
    type_name = doc.get("type")
    cls = _MESSAGE_TYPES.get(type_name)
    if cls is None:
        raise ValueError(f"Unknown message type {type_name!r}")
    body = dict(doc.get("message") or {})
    try:
        for (owner, name), nested_cls in _NESTED.items():
            if owner == type_name and name in body:
                body[name] = [nested_cls(**item) for item in body[name] or []]
        return cls(**body)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Malformed {type_name} payload: {exc}") from exc
