"""Default-gateway lookup used when the server address is derived from the network."""
from __future__ import annotations

from pathlib import Path
from typing import Callable, Optional

from gnss_shared.logging_utils import get_logger

GatewayResolver = Callable[[], Optional[str]]

ROUTE_TABLE = Path("/proc/net/route")
_RTF_UP = 0x1
_RTF_GATEWAY = 0x2

_LOGGER = get_logger("Client.Gateway")


def int_to_ip(value: int) -> str:
    """Format a little-endian packed IPv4 address (lowest byte first)."""
    return ".".join(str((value >> shift) & 0xFF) for shift in (0, 8, 16, 24))


def read_default_gateway(route_table: Path = ROUTE_TABLE, *, interface: Optional[str] = None) -> Optional[str]:
    """Return the default route's gateway from a Linux route table, or None."""
    try:
        lines = route_table.read_text(encoding="ascii").splitlines()
    except (FileNotFoundError, OSError) as exc:
        _LOGGER.debug("Route table unavailable at %s: %s", route_table, exc)
        return None
    for line in lines[1:]:
        fields = line.split()
        if len(fields) < 4:
            continue
        iface, destination, gateway, flags = fields[0], fields[1], fields[2], fields[3]
        if interface is not None and iface != interface:
            continue
        try:
            flag_bits = int(flags, 16)
            gateway_value = int(gateway, 16)
        except ValueError:
            continue
        if destination != "00000000" or not flag_bits & _RTF_UP or not flag_bits & _RTF_GATEWAY:
            continue
        if gateway_value == 0:
            continue
        return int_to_ip(gateway_value)
    return None


def static_resolver(address: Optional[str]) -> GatewayResolver:
    return lambda: address
