"""Length-prefixed framing for server responses plus the 1-byte heartbeat.

Server -> client:
    4 bytes  payload length (u32, big-endian)
    N bytes  payload (UTF-8 JSON object, see ``encode_response``)

Client -> server:
    1 byte   heartbeat (0x01), never length-prefixed

Usage example:

    sock.sendall(encode_frame(encode_response(response)))
    ...
    response = decode_response(read_frame(sock))
"""
from __future__ import annotations

import json
import math
import struct
from typing import Any, Dict, Mapping, Protocol

from gnss_shared.models import OPTIONAL_MEASUREMENTS, LocationUpdate, ServerResponse

HEARTBEAT = b"\x01"
LENGTH_PREFIX_BYTES = 4
MAX_FRAME_BYTES = 64 * 1024

_LENGTH = struct.Struct(">I")


class _Readable(Protocol):
    def recv(self, bufsize: int) -> bytes: ...


# -------------------------
# Exceptions
# -------------------------

class WireProtocolError(Exception):
    """Base class for frames that cannot be trusted; the connection must be dropped."""


class FrameTooLargeError(WireProtocolError):
    """Raised when a length prefix exceeds ``MAX_FRAME_BYTES``."""


class MalformedPayloadError(WireProtocolError):
    """Raised when a payload is not a valid ServerResponse document."""


class PeerClosedError(ConnectionError):
    """Raised when the peer closes the stream in the middle of a read."""


# -------------------------
# Framing
# -------------------------

def encode_frame(payload: bytes) -> bytes:
    if len(payload) > MAX_FRAME_BYTES:
        raise FrameTooLargeError(f"Payload length {len(payload)} > {MAX_FRAME_BYTES}")
    return _LENGTH.pack(len(payload)) + payload


def read_exact(sock: _Readable, count: int) -> bytes:
    """Block until exactly ``count`` bytes arrive.

    Timeouts and socket errors propagate unchanged; an orderly close before
    ``count`` bytes raises PeerClosedError.
    """
    chunks = []
    remaining = count
    while remaining > 0:
        chunk = sock.recv(remaining)
        if not chunk:
            raise PeerClosedError(
                f"Connection closed by peer after {count - remaining} of {count} bytes"
            )
        chunks.append(chunk)
        remaining -= len(chunk)
    return b"".join(chunks)


def read_frame(sock: _Readable) -> bytes:
    """Read one length-prefixed frame and return its payload."""
    (length,) = _LENGTH.unpack(read_exact(sock, LENGTH_PREFIX_BYTES))
    if length > MAX_FRAME_BYTES:
        raise FrameTooLargeError(f"Frame length {length} > {MAX_FRAME_BYTES}")
    if length == 0:
        return b""
    return read_exact(sock, length)


def is_heartbeat(data: bytes) -> bool:
    return data == HEARTBEAT


# -------------------------
# Payload (de)serialisation
# -------------------------

def location_to_dict(update: LocationUpdate) -> Dict[str, Any]:
    document: Dict[str, Any] = {
        "timestamp": int(update.timestamp),
        "latitude": float(update.latitude),
        "longitude": float(update.longitude),
        "satellites": int(update.satellites),
        "provider": update.provider,
        "location_age": float(update.location_age),
    }
    for name in OPTIONAL_MEASUREMENTS:
        value = getattr(update, name)
        if value is not None:
            document[name] = float(value)
    return document


def encode_response(response: ServerResponse) -> bytes:
    if response.location_update is not None:
        document: Dict[str, Any] = {"location_update": location_to_dict(response.location_update)}
    else:
        document = {"status": response.status}
    return json.dumps(document, ensure_ascii=False, separators=(",", ":"), allow_nan=False).encode("utf-8")


def _require_number(data: Mapping[str, Any], key: str) -> float:
    value = data.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        raise MalformedPayloadError(f"Field {key!r} must be a finite number, got {value!r}")
    return float(value)


def _location_from_dict(data: Any) -> LocationUpdate:
    if not isinstance(data, Mapping):
        raise MalformedPayloadError("location_update must be an object")
    timestamp = data.get("timestamp")
    if isinstance(timestamp, bool) or not isinstance(timestamp, int):
        raise MalformedPayloadError(f"Field 'timestamp' must be an integer, got {timestamp!r}")
    satellites = data.get("satellites", 0)
    if isinstance(satellites, bool) or not isinstance(satellites, int) or satellites < 0:
        raise MalformedPayloadError(f"Field 'satellites' must be a non-negative integer, got {satellites!r}")
    provider = data.get("provider", "")
    if not isinstance(provider, str):
        raise MalformedPayloadError(f"Field 'provider' must be a string, got {provider!r}")
    optional = {name: _require_number(data, name) for name in OPTIONAL_MEASUREMENTS if name in data}
    return LocationUpdate(
        timestamp=timestamp,
        latitude=_require_number(data, "latitude"),
        longitude=_require_number(data, "longitude"),
        satellites=satellites,
        provider=provider,
        location_age=_require_number(data, "location_age") if "location_age" in data else 0.0,
        **optional,
    )


def decode_response(payload: bytes) -> ServerResponse:
    try:
        document = json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise MalformedPayloadError(f"Undecodable payload: {exc}") from exc
    if not isinstance(document, dict):
        raise MalformedPayloadError("Payload is not an object")
    has_status = "status" in document
    has_location = "location_update" in document
    if has_status == has_location:
        raise MalformedPayloadError("Payload must carry exactly one of status or location_update")
    if has_status:
        status = document["status"]
        if not isinstance(status, str):
            raise MalformedPayloadError(f"Field 'status' must be a string, got {status!r}")
        return ServerResponse(status=status)
    return ServerResponse(location_update=_location_from_dict(document["location_update"]))
