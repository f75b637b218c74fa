from datetime import datetime, timezone

# 100ns ticks between 1601-01-01 and 1970-01-01
FILETIME_EPOCH_DIFF = 116444736000000000

# 2000-01-01 .. 2100-01-01 in Unix milliseconds
MIN_VALID_MS = 946684800000
MAX_VALID_MS = 4102444800000


def filetime_ticks_to_unix_ms(ticks: int) -> int | None:
    """
    Convert FILETIME ticks to Unix milliseconds. Results outside the sanity
    window are treated as garbage and return None.
    """
    unix_ms = (ticks - FILETIME_EPOCH_DIFF) // 10_000
    if unix_ms < MIN_VALID_MS or unix_ms > MAX_VALID_MS:
        return None
    return unix_ms


def decode_filetime(data: bytes | bytearray | None) -> int | None:
    if data is None or len(data) < 8:
        return None
    return filetime_ticks_to_unix_ms(int.from_bytes(bytes(data[:8]), "little"))


def encode_filetime(unix_ms: int) -> bytes:
    ticks = unix_ms * 10_000 + FILETIME_EPOCH_DIFF
    return ticks.to_bytes(8, "little")


def filetime_from_hex(text: str | None) -> int | None:
    """Decode the leading FILETIME of a REG_BINARY value as printed by `reg query`."""
    if not text:
        return None
    hexdigits = "".join(text.split())
    if len(hexdigits) < 16:
        return None
    try:
        return decode_filetime(bytes.fromhex(hexdigits[:16]))
    except ValueError:
        return None


def format_timestamp(unix_ms: int | None) -> str:
    if unix_ms is None:
        return "Unknown"
    return datetime.fromtimestamp(unix_ms / 1000, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")
