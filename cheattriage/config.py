"""
Configuration loading.

config.yml is split into independent sections. Each section is validated on
its own; a section that fails validation is replaced by its defaults and the
rest of the file still applies.
"""

import sys
from pathlib import Path
from typing import Any, Callable

import yaml

from .errors import ConfigurationInvalid
from .log import log_debug, log_warn
from .models import (
    AppConfig,
    GroupSettings,
    KeywordSet,
    OrchestrationSettings,
    RegistryScanKey,
    ScanSettings,
    SteamPaths,
    Timeouts,
    WindowsPaths,
)

JSONDict = dict[str, Any]

DEFAULT_CONFIG_NAME = "config.yml"

DEFAULT_KEYWORDS = KeywordSet(
    patterns=(
        "cheat", "cheats", "hack", "hacks", "aimbot", "wallhack", "triggerbot",
        "injector", "spoofer", "bhop", "noclip", "speedhack", "cheat engine",
        "cheatengine", "unknowncheats", "dll injector",
    ),
    exact_match=frozenset({"x22cheats", "aimware", "interium"}),
)

DEFAULT_REGISTRY_KEYS = (
    RegistryScanKey(
        r"HKCU\Software\Classes\Local Settings\Software\Microsoft\Windows\Shell\MuiCache",
        "MuiCache",
    ),
    RegistryScanKey(
        r"HKCU\Software\Microsoft\Windows\CurrentVersion\Explorer\FeatureUsage\AppSwitched",
        "AppSwitched",
    ),
    RegistryScanKey(
        r"HKCU\Software\Microsoft\Windows\CurrentVersion\Explorer\FeatureUsage\ShowJumpView",
        "ShowJumpView",
    ),
    RegistryScanKey(r"HKCU\Software\Microsoft\Windows\CurrentVersion\Explorer\RunMRU", "RunMRU"),
    RegistryScanKey(r"HKCU\Software\Microsoft\Windows\CurrentVersion\Run", "Run (HKCU)"),
    RegistryScanKey(r"HKLM\Software\Microsoft\Windows\CurrentVersion\Run", "Run (HKLM)"),
)

GROUP_NAMES = ("filesystem", "registry", "process")


def get_runtime_base_dir() -> Path:
    """
    Returns the base directory where bundled resources are located.
    """
    if hasattr(sys, "_MEIPASS"):
        return Path(sys._MEIPASS)
    return Path(__file__).resolve().parent.parent


def resolve_default_config_path(default_name: str = DEFAULT_CONFIG_NAME) -> Path | None:
    # 1) PyInstaller bundled data / repository root
    p = get_runtime_base_dir() / default_name
    if p.exists():
        return p.resolve()

    # 2) Current working directory
    p = Path.cwd() / default_name
    if p.exists():
        return p.resolve()

    return None


def load_yaml_config(path: Path) -> JSONDict:
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationInvalid("config.yml must be a mapping (dict).")
    return data


# Schema helpers
def _mapping(raw: Any, section: str) -> JSONDict:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigurationInvalid(f"{section} must be a mapping")
    return raw


def _int(d: JSONDict, key: str, default: int, *, minimum: int = 0) -> int:
    v = d.get(key, default)
    if isinstance(v, bool) or not isinstance(v, int):
        raise ConfigurationInvalid(f"{key} must be an integer")
    if v < minimum:
        raise ConfigurationInvalid(f"{key} must be >= {minimum}")
    return v


def _float(d: JSONDict, key: str, default: float, *, minimum: float = 0.0) -> float:
    v = d.get(key, default)
    if isinstance(v, bool) or not isinstance(v, (int, float)):
        raise ConfigurationInvalid(f"{key} must be a number")
    if v <= minimum:
        raise ConfigurationInvalid(f"{key} must be > {minimum}")
    return float(v)


def _str(d: JSONDict, key: str, default: str) -> str:
    v = d.get(key, default)
    if not isinstance(v, str):
        raise ConfigurationInvalid(f"{key} must be a string")
    return v


def _str_list(d: JSONDict, key: str, default: tuple[str, ...]) -> tuple[str, ...]:
    v = d.get(key)
    if v is None:
        return default
    if not isinstance(v, list) or not all(isinstance(x, str) for x in v):
        raise ConfigurationInvalid(f"{key} must be a list of strings")
    return tuple(x for x in v if x.strip())


# Sections
def parse_keywords(raw: Any) -> KeywordSet:
    d = _mapping(raw, "keywords")
    if not d:
        return DEFAULT_KEYWORDS
    patterns = _str_list(d, "patterns", ())
    exact = _str_list(d, "exact_match", ())
    if not patterns and not exact:
        raise ConfigurationInvalid("keywords section defines no patterns")
    return KeywordSet(patterns=patterns, exact_match=frozenset(e.lower() for e in exact))


def parse_scanning(raw: Any) -> ScanSettings:
    d = _mapping(raw, "scanning")
    base = ScanSettings()
    exts = _str_list(d, "executable_extensions", base.executable_extensions)
    norm_exts = tuple(e.lower() if e.startswith(".") else f".{e.lower()}" for e in exts)
    excluded = _str_list(d, "excluded_directories", ())
    return ScanSettings(
        appdata_scan_depth=_int(d, "appdata_scan_depth", base.appdata_scan_depth),
        windows_scan_depth=_int(d, "windows_scan_depth", base.windows_scan_depth),
        program_files_scan_depth=_int(d, "program_files_scan_depth", base.program_files_scan_depth),
        user_folders_scan_depth=_int(d, "user_folders_scan_depth", base.user_folders_scan_depth),
        steam_scan_depth=_int(d, "steam_scan_depth", base.steam_scan_depth),
        recent_files_days=_int(d, "recent_files_days", base.recent_files_days, minimum=1),
        executable_extensions=norm_exts,
        excluded_directories=frozenset(x.lower() for x in excluded),
    )


def parse_windows_paths(raw: Any) -> WindowsPaths:
    d = _mapping(raw, "paths.windows")
    base = WindowsPaths()
    windows_dir = _str(d, "windows_dir", base.windows_dir)
    return WindowsPaths(
        windows_dir=windows_dir,
        prefetch_dir=_str(d, "prefetch_dir", windows_dir.rstrip("\\/") + "\\Prefetch"),
        program_files=_str(d, "program_files", base.program_files),
        program_files_x86=_str(d, "program_files_x86", base.program_files_x86),
    )


def parse_steam_paths(raw: Any) -> SteamPaths:
    d = _mapping(raw, "paths.steam")
    base = SteamPaths()
    drives = _str_list(d, "additional_drives", base.additional_drives)
    for drive in drives:
        if len(drive) != 2 or drive[1] != ":" or not drive[0].isalpha():
            raise ConfigurationInvalid(f"invalid drive: {drive!r}")
    return SteamPaths(
        additional_drives=tuple(x.upper() for x in drives),
        login_users_relative_path=_str(d, "login_users_relative_path", base.login_users_relative_path),
        library_folders_relative_path=_str(
            d, "library_folders_relative_path", base.library_folders_relative_path
        ),
        extra_roots=_str_list(d, "extra_roots", ()),
    )


def parse_registry(raw: Any) -> tuple[RegistryScanKey, ...]:
    d = _mapping(raw, "registry")
    keys = d.get("scan_keys")
    if keys is None:
        return DEFAULT_REGISTRY_KEYS
    if not isinstance(keys, list):
        raise ConfigurationInvalid("registry.scan_keys must be a list")

    out: list[RegistryScanKey] = []
    for item in keys:
        if not isinstance(item, dict):
            raise ConfigurationInvalid("registry.scan_keys entries must be mappings")
        path = _str(item, "path", "")
        if not path.upper().startswith(("HKCU", "HKLM", "HKU", "HKCR", "HKEY_")):
            raise ConfigurationInvalid(f"not a registry path: {path!r}")
        out.append(RegistryScanKey(path=path, name=_str(item, "name", path.rsplit("\\", 1)[-1])))
    return tuple(out)


def parse_orchestration(raw: Any) -> OrchestrationSettings:
    d = _mapping(raw, "orchestration")
    base = OrchestrationSettings()

    groups = dict(base.groups)
    raw_groups = _mapping(d.get("groups"), "orchestration.groups")
    for name, g in raw_groups.items():
        if name not in GROUP_NAMES:
            raise ConfigurationInvalid(f"unknown probe group: {name}")
        g = _mapping(g, f"orchestration.groups.{name}")
        groups[name] = GroupSettings(
            concurrency=_int(g, "concurrency", base.groups[name].concurrency, minimum=1),
            timeout_s=_float(g, "timeout_s", base.groups[name].timeout_s),
        )

    return OrchestrationSettings(
        process_limit=_int(d, "process_limit", base.process_limit, minimum=1),
        poll_interval_s=_float(d, "poll_interval_ms", base.poll_interval_s * 1000) / 1000,
        progress_interval_s=_float(d, "progress_interval_ms", base.progress_interval_s * 1000) / 1000,
        drain_timeout_s=_float(d, "drain_timeout_ms", base.drain_timeout_s * 1000) / 1000,
        groups=groups,
    )


def parse_timeouts(raw: Any) -> Timeouts:
    d = _mapping(raw, "timeouts")
    base = Timeouts()
    return Timeouts(
        default_process_ms=_int(d, "default_process_ms", base.default_process_ms, minimum=1),
        service_ms=_int(d, "service_ms", base.service_ms, minimum=1),
        powershell_ms=_int(d, "powershell_ms", base.powershell_ms, minimum=1),
        max_output_bytes=_int(d, "max_output_bytes", base.max_output_bytes, minimum=1024),
    )


def _section(name: str, parse: Callable[[Any], Any], raw: Any, default: Any) -> Any:
    try:
        return parse(raw)
    except ConfigurationInvalid as ex:
        log_warn(f"Config section '{name}' is invalid ({ex}); using defaults.")
        return default


def build_config(cfg: JSONDict) -> AppConfig:
    paths = cfg.get("paths") if isinstance(cfg.get("paths"), dict) else {}
    report = cfg.get("report") if isinstance(cfg.get("report"), dict) else {}
    base = AppConfig()

    webhook = report.get("webhook_url", "") or ""
    if not isinstance(webhook, str):
        log_warn("Config value 'report.webhook_url' must be a string; ignoring.")
        webhook = ""

    return AppConfig(
        keywords=_section("keywords", parse_keywords, cfg.get("keywords"), DEFAULT_KEYWORDS),
        scanning=_section("scanning", parse_scanning, cfg.get("scanning"), base.scanning),
        windows=_section("paths.windows", parse_windows_paths, paths.get("windows"), base.windows),
        steam=_section("paths.steam", parse_steam_paths, paths.get("steam"), base.steam),
        registry_keys=_section("registry", parse_registry, cfg.get("registry"), DEFAULT_REGISTRY_KEYS),
        orchestration=_section(
            "orchestration", parse_orchestration, cfg.get("orchestration"), base.orchestration
        ),
        timeouts=_section("timeouts", parse_timeouts, cfg.get("timeouts"), base.timeouts),
        webhook_url=webhook,
    )


def load_config(path: Path | None = None) -> AppConfig:
    """
    Load and validate the configuration. Never raises for a bad file: the
    affected sections (or the whole file) fall back to defaults.
    """
    if path is None:
        path = resolve_default_config_path()
        if path is None:
            log_debug("No config.yml found; using built-in defaults.")
            return build_config({})

    try:
        raw = load_yaml_config(path)
    except (OSError, yaml.YAMLError, ConfigurationInvalid) as ex:
        log_warn(f"Could not load {path}: {ex}; using built-in defaults.")
        return build_config({})

    log_debug(f"Loaded configuration from {path}")
    return build_config(raw)
