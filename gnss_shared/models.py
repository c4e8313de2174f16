"""Domain values carried over the link."""
from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class ConnectionState(Enum):
    """Client connection lifecycle."""

    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"


class ServerStatus(Enum):
    """Human-readable server states sent to clients before a fix exists."""

    UNINITIALIZED = "Uninitialized"
    AWAITING_LOCATION = "Waiting for location..."
    TRANSMITTING_LOCATION = "Transmitting location"
    LOCATION_STOPPED = "Location updates stopped"

    @property
    def text(self) -> str:
        return self.value


OPTIONAL_MEASUREMENTS = (
    "altitude",
    "accuracy",
    "bearing",
    "speed",
    "vertical_accuracy",
    "bearing_accuracy",
    "speed_accuracy",
)


def _check_finite(owner: object, names: tuple[str, ...]) -> None:
    for name in names:
        value = getattr(owner, name)
        if value is not None and not math.isfinite(value):
            raise ValueError(f"{name} must be a finite number, got {value!r}")


@dataclass(frozen=True)
class LocationUpdate:
    """One position sample as sent on the wire.

    Optional measurements use ``None`` for "not reported"; ``0.0`` is a real
    value. ``location_age`` is stamped by the server when the update is built
    and is passed through untouched by receivers.
    """

    timestamp: int
    latitude: float
    longitude: float
    altitude: Optional[float] = None
    accuracy: Optional[float] = None
    bearing: Optional[float] = None
    speed: Optional[float] = None
    vertical_accuracy: Optional[float] = None
    bearing_accuracy: Optional[float] = None
    speed_accuracy: Optional[float] = None
    satellites: int = 0
    provider: str = ""
    location_age: float = 0.0

    def __post_init__(self) -> None:
        if self.satellites < 0:
            raise ValueError(f"satellites must be >= 0, got {self.satellites}")
        _check_finite(self, ("latitude", "longitude", "location_age") + OPTIONAL_MEASUREMENTS)

    def present_fields(self) -> frozenset[str]:
        """Names of the optional measurements that carry a value."""
        return frozenset(name for name in OPTIONAL_MEASUREMENTS if getattr(self, name) is not None)


@dataclass(frozen=True)
class ServerResponse:
    """Either a status line or a location update, never both."""

    status: Optional[str] = None
    location_update: Optional[LocationUpdate] = None

    def __post_init__(self) -> None:
        if (self.status is None) == (self.location_update is None):
            raise ValueError("ServerResponse needs exactly one of status or location_update")

    @classmethod
    def from_status(cls, status: ServerStatus | str) -> "ServerResponse":
        text = status.text if isinstance(status, ServerStatus) else str(status)
        return cls(status=text)

    @classmethod
    def from_location(cls, update: LocationUpdate) -> "ServerResponse":
        return cls(location_update=update)

    @property
    def has_location_update(self) -> bool:
        return self.location_update is not None


@dataclass(frozen=True)
class PositionFix:
    """A fix as produced by the external position source."""

    latitude: float
    longitude: float
    timestamp: int
    provider: str = "gps"
    altitude: Optional[float] = None
    accuracy: Optional[float] = None
    bearing: Optional[float] = None
    speed: Optional[float] = None
    vertical_accuracy: Optional[float] = None
    bearing_accuracy: Optional[float] = None
    speed_accuracy: Optional[float] = None

    def __post_init__(self) -> None:
        _check_finite(self, ("latitude", "longitude") + OPTIONAL_MEASUREMENTS)

    def to_location_update(self, *, satellites: int, now_ms: int) -> LocationUpdate:
        return LocationUpdate(
            timestamp=self.timestamp,
            latitude=self.latitude,
            longitude=self.longitude,
            altitude=self.altitude,
            accuracy=self.accuracy,
            bearing=self.bearing,
            speed=self.speed,
            vertical_accuracy=self.vertical_accuracy,
            bearing_accuracy=self.bearing_accuracy,
            speed_accuracy=self.speed_accuracy,
            satellites=max(0, int(satellites)),
            provider=self.provider,
            location_age=(now_ms - self.timestamp) / 1000.0,
        )
