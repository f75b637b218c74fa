"""
Valve Data Format (Steam's brace-delimited key/value text).

loginusers.vdf looks like:

    "users"
    {
        "76561198000000000"
        {
            "AccountName"       "player"
            "PersonaName"       "Player One"
            "RememberPassword"  "1"
            "Timestamp"         "1700000000"
        }
    }
"""

import re
from typing import Any

from ..models import SteamAccount

STEAM_ID_PREFIX = "7656"
STEAM_ID_LENGTH = 17

_QUOTED = re.compile(r'"((?:[^"\\]|\\.)*)"')
_ACCOUNT_NAME = re.compile(r"^[A-Za-z0-9_\-.]+$")


def _tokens(line: str) -> list[str]:
    return [t.replace("\\\\", "\\").replace('\\"', '"') for t in _QUOTED.findall(line)]


def is_valid_steam_id(steam_id: str | None) -> bool:
    return (
        bool(steam_id)
        and len(steam_id) == STEAM_ID_LENGTH
        and steam_id.isdigit()
        and steam_id.startswith(STEAM_ID_PREFIX)
    )


def parse_steam_accounts(text: str | None) -> list[SteamAccount]:
    """
    Extract accounts from loginusers.vdf. A record is emitted only when it
    has both a valid id and an AccountName; records under a malformed id are
    skipped. Garbage input yields an empty list.
    """
    accounts: list[SteamAccount] = []
    if not text:
        return accounts

    current: SteamAccount | None = None
    in_users = False

    def flush():
        if current is not None and current.account_name:
            accounts.append(current)

    for raw in text.lstrip("\ufeff").splitlines():
        line = raw.strip()
        if not line or line.startswith("//"):
            continue

        tokens = _tokens(line)

        if not in_users:
            if tokens and tokens[0].lower() == "users":
                in_users = True
            continue

        if len(tokens) == 1:
            # a new record header: either a Steam id or something we ignore
            flush()
            current = SteamAccount(steam_id=tokens[0]) if is_valid_steam_id(tokens[0]) else None
            continue

        if line == "}":
            flush()
            current = None
            continue

        if current is None or len(tokens) < 2:
            continue

        key, value = tokens[0].lower(), tokens[1]
        if key == "accountname":
            current.account_name = value
        elif key == "personaname":
            current.persona_name = value
        elif key == "rememberpassword":
            current.remember_password = value == "1"
        elif key == "timestamp":
            try:
                current.timestamp = int(value)
            except ValueError:
                pass

    flush()
    return accounts


def validate_account(account: SteamAccount) -> list[str]:
    errors: list[str] = []

    sid = account.steam_id
    if not sid:
        errors.append("SteamID is empty")
    elif not sid.startswith(STEAM_ID_PREFIX) or len(sid) != STEAM_ID_LENGTH:
        errors.append(f"Invalid SteamID format: {sid}")
    elif not sid.isdigit():
        errors.append(f"SteamID contains non-digit characters: {sid}")

    name = account.account_name
    if not name:
        errors.append("AccountName is empty")
    elif len(name) > 64:
        errors.append(f"AccountName too long: {len(name)} characters")
    elif not _ACCOUNT_NAME.match(name):
        errors.append(f"AccountName contains invalid characters: {name}")

    if account.persona_name and len(account.persona_name) > 128:
        errors.append(f"PersonaName too long: {len(account.persona_name)} characters")

    return errors


def parse_vdf(text: str | None) -> dict[str, Any]:
    """Generic VDF to nested dicts. Unbalanced braces are tolerated."""
    root: dict[str, Any] = {}
    stack: list[dict[str, Any]] = [root]
    if not text:
        return root

    for raw in text.lstrip("\ufeff").splitlines():
        line = raw.strip()
        if not line or line.startswith("//"):
            continue

        if line == "{":
            continue
        if line == "}":
            if len(stack) > 1:
                stack.pop()
            continue

        tokens = _tokens(line)
        if len(tokens) >= 2:
            stack[-1][tokens[0]] = tokens[1]
        elif len(tokens) == 1:
            child: dict[str, Any] = {}
            stack[-1][tokens[0]] = child
            stack.append(child)
            if line.endswith("}"):
                stack.pop()

    return root


def _get_ci(d: dict[str, Any], key: str) -> Any:
    for k, v in d.items():
        if k.lower() == key:
            return v
    return None


def library_folders(text: str | None) -> list[str]:
    """
    Library paths from steamapps/libraryfolders.vdf. Handles both the current
    layout ("0" { "path" "..." }) and the old one ("1" "D:\\SteamLibrary").
    """
    data = _get_ci(parse_vdf(text), "libraryfolders")
    if not isinstance(data, dict):
        return []

    out: list[str] = []
    for key, value in data.items():
        path = None
        if isinstance(value, dict):
            path = _get_ci(value, "path")
        elif key.isdigit():
            path = value
        if isinstance(path, str) and path and path not in out:
            out.append(path)
    return out
