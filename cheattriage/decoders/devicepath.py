import re
from typing import Any

from ..errors import Cancelled, ExecutionError
from ..log import log_debug

_DEVICE_PATH = re.compile(r"^\\(?:\?\?\\|\\\?\\)?Device\\HarddiskVolume(\d+)(\\.*)?$", re.IGNORECASE)
_FLTMC_LINE = re.compile(r"^([A-Za-z]:)\s+\\Device\\HarddiskVolume(\d+)\b", re.IGNORECASE)
_VOLUME_NUMBER = re.compile(r"HarddiskVolume(\d+)", re.IGNORECASE)


def parse_fltmc_volumes(text: str) -> dict[int, str]:
    """`fltmc volumes`: `C:    \\Device\\HarddiskVolume3    NTFS ...`"""
    out: dict[int, str] = {}
    for line in text.splitlines():
        m = _FLTMC_LINE.match(line.strip())
        if m:
            out.setdefault(int(m.group(2)), m.group(1).upper())
    return out


def parse_wmic_volumes(text: str) -> dict[int, str]:
    """`wmic volume get DeviceID,DriveLetter /format:csv` (Node,DeviceID,DriveLetter)."""
    out: dict[int, str] = {}
    for line in text.splitlines():
        parts = [p.strip() for p in line.split(",")]
        if len(parts) < 3:
            continue
        device_id, letter = parts[1], parts[2]
        m = _VOLUME_NUMBER.search(device_id)
        if m and re.fullmatch(r"[A-Za-z]:", letter):
            out.setdefault(int(m.group(1)), letter.upper())
    return out


class DriveMap:
    """
    Volume number to drive letter cache for one probe instance. Built on the
    first lookup; `invalidate()` forces a rebuild on the next one.
    """

    QUERIES = (
        ("fltmc volumes", parse_fltmc_volumes),
        ("wmic volume get DeviceID,DriveLetter /format:csv", parse_wmic_volumes),
    )

    def __init__(self, executor: Any, timeout_ms: int = 5000):
        self._executor = executor
        self._timeout_ms = timeout_ms
        self._map: dict[int, str] | None = None

    def invalidate(self) -> None:
        self._map = None

    def mapping(self, token: Any = None) -> dict[int, str]:
        if self._map is None:
            self._map = self._build(token)
        return self._map

    def _build(self, token: Any) -> dict[int, str]:
        for command, parse in self.QUERIES:
            try:
                out = self._executor.run(command, timeout_ms=self._timeout_ms, token=token)
            except Cancelled:
                raise
            except ExecutionError as ex:
                log_debug(f"Volume query '{command}' failed: {ex}")
                continue
            mapping = parse(out)
            if mapping:
                return mapping
        return {}

    def resolve(self, path: str, token: Any = None) -> str:
        """
        `\\Device\\HarddiskVolume3\\x\\y.exe` -> `C:\\x\\y.exe`. Anything that is
        not a device path, or whose volume is unknown, comes back unchanged.
        """
        m = _DEVICE_PATH.match(path)
        if not m:
            return path
        letter = self.mapping(token).get(int(m.group(1)))
        if letter is None:
            return path
        return letter + (m.group(2) or "\\")
