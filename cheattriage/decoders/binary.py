"""
Binary artifact helpers: shell links, prefetch names and string carving.
"""

import re
import struct

LNK_HEADER_SIZE = 0x4C
LNK_CLSID = bytes.fromhex("0114020000000000c000000000000046")

# LinkFlags
HAS_LINK_TARGET_ID_LIST = 0x01
HAS_LINK_INFO = 0x02

# LinkInfoFlags
VOLUME_ID_AND_LOCAL_BASE_PATH = 0x01

_PREFETCH_NAME = re.compile(r"^(.+)-([0-9A-Fa-f]{8})\.pf$", re.IGNORECASE)


def _cstring(data: bytes, offset: int) -> str:
    end = data.find(b"\x00", offset)
    if end < 0:
        end = len(data)
    return data[offset:end].decode("cp1252", errors="replace")


def _wstring(data: bytes, offset: int) -> str:
    end = offset
    while end + 1 < len(data) and data[end:end + 2] != b"\x00\x00":
        end += 2
    return data[offset:end].decode("utf-16-le", errors="replace")


def read_lnk_target(data: bytes) -> str | None:
    """
    Local target path of a shell link (MS-SHLLINK LinkInfo LocalBasePath plus
    CommonPathSuffix). Returns None for anything that is not a link with a
    local target.
    """
    if len(data) < LNK_HEADER_SIZE + 4:
        return None
    if struct.unpack_from("<I", data, 0)[0] != LNK_HEADER_SIZE or data[4:20] != LNK_CLSID:
        return None

    flags = struct.unpack_from("<I", data, 0x14)[0]
    pos = LNK_HEADER_SIZE

    if flags & HAS_LINK_TARGET_ID_LIST:
        if pos + 2 > len(data):
            return None
        pos += 2 + struct.unpack_from("<H", data, pos)[0]

    if not flags & HAS_LINK_INFO or pos + 28 > len(data):
        return None

    info_size, header_size, info_flags = struct.unpack_from("<III", data, pos)
    if info_size < 28 or pos + info_size > len(data):
        return None
    if not info_flags & VOLUME_ID_AND_LOCAL_BASE_PATH:
        return None

    info = data[pos:pos + info_size]
    base_off, _, suffix_off = struct.unpack_from("<III", info, 16)

    if header_size >= 0x24 and info_size >= 0x24:
        base_off_w, suffix_off_w = struct.unpack_from("<II", info, 28)
        base = _wstring(info, base_off_w) if base_off_w else _cstring(info, base_off)
        suffix = _wstring(info, suffix_off_w) if suffix_off_w else _cstring(info, suffix_off)
    else:
        base = _cstring(info, base_off)
        suffix = _cstring(info, suffix_off) if suffix_off else ""

    if not base:
        return None
    if suffix and not base.endswith("\\"):
        base += "\\"
    return base + suffix


def split_prefetch_name(filename: str) -> tuple[str, str] | None:
    """`CHEAT.EXE-1A2B3C4D.pf` -> (`CHEAT.EXE`, `1A2B3C4D`)."""
    m = _PREFETCH_NAME.match(filename)
    if not m:
        return None
    return m.group(1), m.group(2).upper()


def extract_strings(blob: bytes, min_length: int = 4) -> list[str]:
    """Printable ASCII runs followed by printable UTF-16LE runs."""
    ascii_rx = re.compile(rb"[\x20-\x7e]{%d,}" % min_length)
    wide_rx = re.compile(rb"(?:[\x20-\x7e]\x00){%d,}" % min_length)

    out = [m.group().decode("ascii") for m in ascii_rx.finditer(blob)]
    out.extend(m.group().decode("utf-16-le") for m in wide_rx.finditer(blob))
    return out


_DRIVE_PATH = re.compile(r"[A-Za-z]:\\[^\x00-\x1f\ufffd]+")


def extract_utf16_paths(blob: bytes) -> list[str]:
    """
    Drive-letter paths stored as NUL-terminated UTF-16LE strings, as in
    RecentFileCache.bcf. Both byte alignments are tried; first-seen order,
    duplicates removed.
    """
    out: list[str] = []
    for start in (0, 1):
        chunk = blob[start:]
        text = chunk[:len(chunk) - len(chunk) % 2].decode("utf-16-le", errors="replace")
        for m in _DRIVE_PATH.finditer(text):
            path = m.group().rstrip()
            if path not in out:
                out.append(path)
    return out
