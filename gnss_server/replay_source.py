"""Position source that replays JSON-lines fixes from a file or stdin."""
from __future__ import annotations

import json
import math
import sys
import threading
import time
from pathlib import Path
from typing import IO, TYPE_CHECKING, Any, Dict, Optional, Union

from gnss_shared.logging_utils import get_logger
from gnss_shared.models import OPTIONAL_MEASUREMENTS, PositionFix

if TYPE_CHECKING:
    from gnss_server.position_bridge import PositionBridge

_LOGGER = get_logger("Server.ReplaySource")


class FixLineError(ValueError):
    """A replay line that is not a usable fix or satellite count."""


def _number(data: Dict[str, Any], key: str) -> float:
    value = data.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise FixLineError(f"'{key}' must be a number")
    if not math.isfinite(value):
        raise FixLineError(f"'{key}' must be finite, got {value!r}")
    return float(value)


def _build_fix(data: Dict[str, Any], now_ms: Optional[int]) -> PositionFix:
    optionals: Dict[str, Optional[float]] = {}
    for name in OPTIONAL_MEASUREMENTS:
        if data.get(name) is not None:
            optionals[name] = _number(data, name)
    if "time" in data:
        timestamp = int(_number(data, "time"))
    else:
        timestamp = now_ms if now_ms is not None else int(time.time() * 1000)
    return PositionFix(
        latitude=_number(data, "latitude"),
        longitude=_number(data, "longitude"),
        timestamp=timestamp,
        provider=str(data.get("provider") or "gps"),
        **optionals,
    )


def parse_fix_line(line: str, *, now_ms: Optional[int] = None) -> Union[PositionFix, int, None]:
    """Parse one replay line.

    Returns a ``PositionFix``, a satellite count (``{"satellites": n}``), or
    ``None`` for blank lines. Fixes without ``time`` are stamped with the
    current wall clock. Anything unusable raises ``FixLineError``.
    """
    line = line.strip()
    if not line:
        return None
    try:
        data = json.loads(line)
    except json.JSONDecodeError as exc:
        raise FixLineError(f"invalid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise FixLineError("line must be a JSON object")
    if "latitude" not in data and "longitude" not in data:
        if "satellites" in data:
            count = data["satellites"]
            if isinstance(count, bool) or not isinstance(count, int):
                raise FixLineError("'satellites' must be an integer")
            return max(0, count)
        raise FixLineError("line has neither a position nor a satellite count")
    try:
        return _build_fix(data, now_ms)
    except FixLineError:
        raise
    except (TypeError, ValueError, OverflowError) as exc:
        raise FixLineError(str(exc)) from exc


class ReplayPositionSource:
    """Feeds parsed lines into the bridge on a worker thread while ingestion runs."""

    def __init__(
        self,
        path: Optional[Path] = None,
        *,
        interval: float = 1.0,
        stream: Optional[IO[str]] = None,
    ) -> None:
        self._path = Path(path) if path is not None else None
        self._stream = stream
        self._interval = interval
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def thread(self) -> Optional[threading.Thread]:
        return self._thread

    def start(self, bridge: "PositionBridge") -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        thread = threading.Thread(
            target=self._run,
            args=(bridge,),
            name="GNSSShare-Replay",
            daemon=True,
        )
        self._thread = thread
        thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=max(2.0, self._interval * 2))
        self._thread = None

    def _run(self, bridge: "PositionBridge") -> None:
        if self._path is not None:
            try:
                with self._path.open("r", encoding="utf-8") as handle:
                    self._replay(handle, bridge)
            except OSError as exc:
                _LOGGER.error("Could not read fixes from %s: %s", self._path, exc)
            return
        self._replay(self._stream or sys.stdin, bridge)

    def _replay(self, handle: IO[str], bridge: "PositionBridge") -> None:
        for number, line in enumerate(handle, start=1):
            if self._stop_event.is_set():
                return
            try:
                item = parse_fix_line(line)
            except FixLineError as exc:
                _LOGGER.warning("Skipping replay line %d: %s", number, exc)
                continue
            if item is None:
                continue
            if isinstance(item, PositionFix):
                bridge.on_fix(item)
                if self._stop_event.wait(self._interval):
                    return
            else:
                bridge.on_satellite_count(item)
        _LOGGER.info("Replay input exhausted")
