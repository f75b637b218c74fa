"""
Parsers for console tool output whose wording depends on the Windows display
language. Each parser knows a fixed set of header vocabularies and falls back
to the generic `label . . . : value` layout for anything else.
"""

import csv
import io
import re
from dataclasses import dataclass


# DNS cache (ipconfig /displaydns)
@dataclass(frozen=True)
class DnsEntry:
    name: str
    record_type: str = ""
    ttl: int = 0


_DNS_NAME_LABELS = (
    "Record Name", "Имя записи", "Eintragsname", "Nom de l'enregistrement",
    "Nombre del registro", "Nome do Registro", "Nome record", "Nazwa rekordu",
    "Kayıt Adı", "记录名称", "レコード名", "레코드 이름",
)
_DNS_TYPE_LABELS = (
    "Record Type", "Тип записи", "Eintragstyp", "Type d'enregistrement",
    "Tipo del registro", "Tipo de Registro", "Tipo record", "Typ rekordu",
    "Kayıt Türü", "记录类型", "レコードの種類", "레코드 유형",
)
_DNS_TTL_LABELS = (
    "Time To Live", "Срок жизни", "Gültigkeitsdauer", "Durée de vie",
    "Período de vida", "Tempo de Vida", "Durata", "Czas wygaśnięcia",
    "Yaşam Süresi", "生存时间", "有効期間", "TTL",
)

# ipconfig pads labels with ". . . ." runs before the colon
_LEADER = r"[\s.]*:\s*"


def _label_rx(labels: tuple[str, ...], value: str) -> re.Pattern:
    alternation = "|".join(re.escape(x) for x in labels)
    return re.compile(rf"^(?:{alternation}){_LEADER}{value}$", re.IGNORECASE)


_DNS_NAME = _label_rx(_DNS_NAME_LABELS, r"(\S.*?)")
_DNS_TYPE = _label_rx(_DNS_TYPE_LABELS, r"(\d+)")
_DNS_TTL = _label_rx(_DNS_TTL_LABELS, r"(\d+)")
_DNS_GENERIC = re.compile(rf"^[^:]*?\w[^:]*?\s\.(?:\s?\.)*{_LEADER}([A-Za-z0-9][\w.-]*\.[A-Za-z]{{2,}})\.?$")

_DNS_TYPES = {1: "A", 2: "NS", 5: "CNAME", 6: "SOA", 12: "PTR", 15: "MX", 16: "TXT", 28: "AAAA", 33: "SRV", 65: "HTTPS"}


def dns_type_name(code: int) -> str:
    return _DNS_TYPES.get(code, str(code))


def parse_dns_cache(text: str | None) -> list[DnsEntry]:
    if not text:
        return []

    entries: list[DnsEntry] = []
    name, rtype, ttl = "", "", 0

    def flush():
        if name:
            entries.append(DnsEntry(name=name, record_type=rtype, ttl=ttl))

    for raw in text.splitlines():
        line = raw.strip()
        if not line:
            continue

        m = _DNS_NAME.match(line)
        if m:
            flush()
            name, rtype, ttl = m.group(1).strip(), "", 0
            continue

        m = _DNS_TYPE.match(line)
        if m:
            rtype = dns_type_name(int(m.group(1)))
            continue

        m = _DNS_TTL.match(line)
        if m:
            ttl = int(m.group(1))
            continue

    flush()
    if entries:
        return entries

    # Unknown display language: take every domain-looking value.
    for raw in text.splitlines():
        m = _DNS_GENERIC.match(raw.strip())
        if m:
            domain = m.group(1)
            if not entries or entries[-1].name != domain:
                entries.append(DnsEntry(name=domain))
    return entries


# reg query
@dataclass(frozen=True)
class RegValue:
    key: str
    name: str
    type: str
    data: str


DEFAULT_VALUE_NAME = "(Default)"

REG_STRING_TYPES = frozenset({"REG_SZ", "REG_EXPAND_SZ", "REG_MULTI_SZ"})

_DEFAULT_NAMES = frozenset(x.casefold() for x in (
    "(Default)", "(По умолчанию)", "(Standard)", "(Par défaut)", "(Predeterminado)",
    "(Padrão)", "(Predefinito)", "(Domyślny)", "(Varsayılan)", "(默认)", "(既定)", "(기본값)",
    "(Standaard)", "(Výchozí)",
))

_REG_VALUE = re.compile(r"^\s+(.*?)\s{2,}(REG_[A-Z0-9_]+)(?:\s+(.*))?$")
_REG_KEY = re.compile(r"^HKEY_[A-Z_]+(?:\\.*)?$", re.IGNORECASE)


def parse_reg_query(text: str | None) -> list[RegValue]:
    """
    Values from `reg query <key> [/s]` output. Every value carries the full
    key path it was printed under. Localized default-value names are
    normalized to `(Default)`.
    """
    out: list[RegValue] = []
    if not text:
        return out

    key = ""
    for raw in text.splitlines():
        line = raw.rstrip("\r\n")
        if not line.strip():
            continue

        if _REG_KEY.match(line):
            key = line.strip()
            continue

        m = _REG_VALUE.match(line)
        if not m or not key:
            continue

        name = m.group(1).strip()
        if name.casefold() in _DEFAULT_NAMES:
            name = DEFAULT_VALUE_NAME
        out.append(RegValue(key=key, name=name, type=m.group(2), data=(m.group(3) or "").strip()))
    return out


_HIVE_ABBREVIATIONS = {
    "HKCU": "HKEY_CURRENT_USER",
    "HKLM": "HKEY_LOCAL_MACHINE",
    "HKU": "HKEY_USERS",
    "HKCR": "HKEY_CLASSES_ROOT",
    "HKCC": "HKEY_CURRENT_CONFIG",
}


def expand_hive(path: str) -> str:
    """`HKCU\\Software` -> `HKEY_CURRENT_USER\\Software`, as reg.exe prints it."""
    head, sep, rest = path.partition("\\")
    return _HIVE_ABBREVIATIONS.get(head.upper(), head) + sep + rest


def reg_subkeys(text: str | None, parent: str) -> list[str]:
    """Direct child key names printed by a non-recursive `reg query`."""
    if not text:
        return []
    prefix = expand_hive(parent).rstrip("\\").lower() + "\\"
    out: list[str] = []
    for raw in text.splitlines():
        line = raw.strip()
        if _REG_KEY.match(line) and line.lower().startswith(prefix):
            child = line[len(prefix):]
            if child and "\\" not in child:
                out.append(child)
    return out


# CSV
def parse_csv_line(line: str) -> list[str]:
    """One CSV record: quoted fields, embedded commas, `""` escapes."""
    for row in csv.reader([line]):
        return row
    return []


def parse_csv(text: str | None) -> list[list[str]]:
    if not text:
        return []
    reader = csv.reader(io.StringIO(text.replace("\r\n", "\n").replace("\r", "\n")))
    return [row for row in reader if row and any(f.strip() for f in row)]


def parse_csv_records(text: str | None) -> list[dict[str, str]]:
    """CSV with a header row (wmic /format:csv, PowerShell Export-Csv)."""
    rows = parse_csv(text)
    if not rows:
        return []
    header = [h.strip() for h in rows[0]]
    out: list[dict[str, str]] = []
    for row in rows[1:]:
        if row == rows[0]:
            continue
        out.append({h: (row[i].strip() if i < len(row) else "") for i, h in enumerate(header)})
    return out


# WMIC /format:list
def parse_wmic_list(text: str | None) -> list[dict[str, str]]:
    """`Key=Value` blocks separated by blank lines."""
    records: list[dict[str, str]] = []
    current: dict[str, str] = {}
    for raw in (text or "").splitlines():
        line = raw.strip()
        if not line:
            if current:
                records.append(current)
                current = {}
            continue
        key, sep, value = line.partition("=")
        if sep and key:
            current[key.strip()] = value.strip()
    if current:
        records.append(current)
    return records


# MAC addresses
_MAC = re.compile(r"\b([0-9A-Fa-f]{2})[:-]([0-9A-Fa-f]{2})[:-]([0-9A-Fa-f]{2})[:-]([0-9A-Fa-f]{2})[:-]([0-9A-Fa-f]{2})[:-]([0-9A-Fa-f]{2})\b")


def extract_mac_addresses(text: str | None) -> list[str]:
    """Every MAC in the text, normalized to `AA:BB:CC:DD:EE:FF`, first-seen order."""
    out: list[str] = []
    for m in _MAC.finditer(text or ""):
        mac = ":".join(g.upper() for g in m.groups())
        if mac not in out:
            out.append(mac)
    return out
