"""JSON-backed settings for both link roles."""
from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict

from gnss_shared.timings import DEFAULT_PORT, DEFAULT_SERVER_ADDRESS

PREFERENCES_FILE = "gnss_share_settings.json"
LOG_RETENTION_MIN = 1
LOG_RETENTION_MAX = 20


@dataclass
class Preferences:
    """Simple JSON-backed preferences store."""

    config_dir: Path
    use_gateway_ip: bool = True
    server_address: str = DEFAULT_SERVER_ADDRESS
    port: int = DEFAULT_PORT
    service_enabled: bool = False
    log_retention: int = 5
    debug_logging: bool = False

    def __post_init__(self) -> None:
        self.config_dir = Path(self.config_dir)
        self._path = self.config_dir / PREFERENCES_FILE
        self._load()

    @property
    def path(self) -> Path:
        return self._path

    # Persistence ---------------------------------------------------------

    def _load(self) -> None:
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return
        except (OSError, json.JSONDecodeError):
            return
        if not isinstance(data, dict):
            return
        self.use_gateway_ip = bool(data.get("use_gateway_ip", True))
        address = data.get("server_address")
        address = str(address).strip() if address is not None else ""
        self.server_address = address or DEFAULT_SERVER_ADDRESS
        try:
            port = int(data.get("port", DEFAULT_PORT))
        except (TypeError, ValueError):
            port = DEFAULT_PORT
        self.port = port if 0 < port < 65536 else DEFAULT_PORT
        self.service_enabled = bool(data.get("service_enabled", False))
        try:
            retention = int(data.get("log_retention", 5))
        except (TypeError, ValueError):
            retention = 5
        self.log_retention = max(LOG_RETENTION_MIN, min(retention, LOG_RETENTION_MAX))
        self.debug_logging = bool(data.get("debug_logging", False))

    def save(self) -> None:
        payload: Dict[str, Any] = {
            "use_gateway_ip": bool(self.use_gateway_ip),
            "server_address": str(self.server_address or DEFAULT_SERVER_ADDRESS),
            "port": int(self.port),
            "service_enabled": bool(self.service_enabled),
            "log_retention": int(self.log_retention),
            "debug_logging": bool(self.debug_logging),
        }
        self.config_dir.mkdir(parents=True, exist_ok=True)
        self._path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
