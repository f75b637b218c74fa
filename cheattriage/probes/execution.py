"""
Execution-history probes: BAM/DAM last-run records and the Amcache family
(Amcache.hve, uninstall inventory, AppCompat keys, RecentFileCache.bcf).
"""

import json
import os
import re
import shutil
import tempfile
from datetime import datetime

from Registry import Registry
from Registry.RegistryParse import RegistryException

from ..decoders.binary import extract_utf16_paths
from ..decoders.devicepath import DriveMap
from ..decoders.filetime import filetime_from_hex, format_timestamp
from ..decoders.text import REG_STRING_TYPES, parse_reg_query, reg_subkeys
from ..errors import ExecutionError, ParseFailure
from ..executor import copy_locked_file
from ..log import log_debug, log_dim
from .base import ProbeBase, probe

_USER_SID = re.compile(r"S-1-5-21-[\d-]+")

# BAM first appeared in Windows 10 1709
BAM_MIN_BUILD = 16299

WINDOWS_NT_KEY = r"HKLM\SOFTWARE\Microsoft\Windows NT\CurrentVersion"


def windows_build(run_cmd) -> int | None:
    try:
        out = run_cmd(f'reg query "{WINDOWS_NT_KEY}" /v CurrentBuildNumber')
    except ExecutionError:
        return None
    for v in parse_reg_query(out):
        if v.name.lower() == "currentbuildnumber" and v.data.isdigit():
            return int(v.data)
    return None


def bam_roots() -> list[tuple[str, str]]:
    """(registry root holding per-SID keys, source label)"""
    roots = []
    for service in ("bam", "dam"):
        for layout in (r"State\UserSettings", "UserSettings"):
            roots.append((rf"HKLM\SYSTEM\CurrentControlSet\Services\{service}\{layout}", service.upper()))
    for control_set in ("ControlSet001", "ControlSet002"):
        roots.append((rf"HKLM\SYSTEM\{control_set}\Services\bam\State\UserSettings", f"BAM/{control_set}"))
    return roots


@probe(
    "bam",
    "BAM Scanner",
    "Scanning Background Activity Moderator execution records",
    "registry",
)
class BamProbe(ProbeBase):
    def setup(self) -> None:
        self.drives = DriveMap(self.ctx.executor, self.ctx.config.timeouts.service_ms)

    def on_reset(self) -> None:
        self.drives.invalidate()

    def user_sids(self) -> list[str]:
        sids: list[str] = []
        root = bam_roots()[0][0]
        try:
            out = self.run_cmd(f'reg query "{root}"')
            sids.extend(s for s in reg_subkeys(out, root) if _USER_SID.fullmatch(s))
        except ExecutionError as ex:
            log_debug(f"Cannot list BAM users: {ex}")

        if not sids:
            try:
                out = self.run_cmd("whoami /user /fo csv /nh", timeout_ms=self.ctx.config.timeouts.service_ms)
                sids.extend(_USER_SID.findall(out)[:1])
            except ExecutionError as ex:
                log_debug(f"whoami failed: {ex}")

        return list(dict.fromkeys(sids))

    def collect(self) -> None:
        build = windows_build(self.run_cmd)
        if build is not None and build < BAM_MIN_BUILD:
            log_dim(f"BAM is not available on Windows build {build}")
            return

        sids = self.user_sids()
        if not sids:
            raise ParseFailure("No user SIDs found for BAM lookup")

        targets = [(rf"{root}\{sid}", source) for root, source in bam_roots() for sid in sids]
        matcher = self.ctx.matcher

        for i, (path, source) in enumerate(targets, 1):
            self.run.check()
            self.run.progress(i, len(targets), path)

            try:
                out = self.run_cmd(f'reg query "{path}"')
            except ExecutionError as ex:
                log_debug(f"{path}: {ex}")
                continue

            for value in parse_reg_query(out):
                if "\\" not in value.name and "/" not in value.name:
                    continue
                resolved = self.drives.resolve(value.name, self.run.token)
                if not matcher.contains_keyword(resolved):
                    continue

                line = f"[{source}] {matcher.tag(resolved)}{resolved}"
                if value.type == "REG_BINARY":
                    ts = filetime_from_hex(value.data)
                    if ts is not None:
                        line += f" | {format_timestamp(ts)}"
                self.run.add(line)


APPCOMPAT_KEYS = (
    r"HKLM\SOFTWARE\Microsoft\Windows NT\CurrentVersion\AppCompatFlags\CIT\System",
    r"HKLM\SOFTWARE\Microsoft\Windows NT\CurrentVersion\AppCompatFlags\Appraiser",
    r"HKCU\SOFTWARE\Microsoft\Windows NT\CurrentVersion\AppCompatFlags\Layers",
    r"HKCU\SOFTWARE\Microsoft\Windows NT\CurrentVersion\AppCompatFlags\Compatibility Assistant\Store",
    r"HKLM\SOFTWARE\Microsoft\Windows\CurrentVersion\App Paths",
)

UNINSTALL_INVENTORY_SCRIPT = r"""
$paths = @(
  'HKLM:\SOFTWARE\Microsoft\Windows\CurrentVersion\Uninstall\*',
  'HKLM:\SOFTWARE\WOW6432Node\Microsoft\Windows\CurrentVersion\Uninstall\*',
  'HKCU:\SOFTWARE\Microsoft\Windows\CurrentVersion\Uninstall\*'
)
@(Get-ItemProperty $paths |
  Where-Object { $_.DisplayName -or $_.InstallLocation } |
  Select-Object DisplayName, InstallLocation, Publisher) | ConvertTo-Json -Compress
"""


def _hive_value(key, name: str) -> str | None:
    try:
        v = key.value(name).value()
    except Registry.RegistryValueNotFoundException:
        return None
    return v if isinstance(v, str) else None


def read_amcache_entries(hive_path: str) -> list[tuple[str, datetime | None]]:
    """
    (path, key last-write time) for every program Amcache recorded. Handles
    the Windows 10+ InventoryApplicationFile layout and the older Root\\File
    layout (value "15" holds the full path).
    """
    reg = Registry.Registry(hive_path)
    out: list[tuple[str, datetime | None]] = []

    try:
        inventory = reg.open(r"Root\InventoryApplicationFile")
    except Registry.RegistryKeyNotFoundException:
        inventory = None

    if inventory is not None:
        for key in inventory.subkeys():
            path = _hive_value(key, "LowerCaseLongPath") or _hive_value(key, "Name")
            if path:
                out.append((path, key.timestamp()))
        return out

    try:
        files = reg.open(r"Root\File")
    except Registry.RegistryKeyNotFoundException:
        return out

    for volume in files.subkeys():
        for key in volume.subkeys():
            path = _hive_value(key, "15")
            if path:
                out.append((path, key.timestamp()))
    return out


@probe(
    "amcache",
    "Amcache Scanner",
    "Scanning Amcache for program execution history",
    "registry",
)
class AmcacheProbe(ProbeBase):
    def programs_dir(self) -> str:
        return os.path.join(self.ctx.config.windows.windows_dir, "AppCompat", "Programs")

    def scan_hive(self) -> None:
        hive = os.path.join(self.programs_dir(), "Amcache.hve")
        if not os.path.isfile(hive):
            return

        tmp_dir = tempfile.mkdtemp(prefix="cheattriage_")
        try:
            snapshot = os.path.join(tmp_dir, "Amcache.hve")
            try:
                copy_locked_file(hive, snapshot, token=self.run.token)
                entries = read_amcache_entries(snapshot)
            except (OSError, RegistryException) as ex:
                log_debug(f"Amcache hive unavailable: {ex}")
                return

            matcher = self.ctx.matcher
            for path, ts in entries:
                self.run.check()
                if matcher.contains_keyword(path):
                    line = f"[Amcache/Hive] {matcher.tag(path)}{path}"
                    if ts is not None:
                        line += f" | {ts.strftime('%Y-%m-%d %H:%M:%S')} UTC"
                    self.run.add(line)
        finally:
            shutil.rmtree(tmp_dir, ignore_errors=True)

    def scan_inventory(self) -> None:
        try:
            out = self.run_powershell(UNINSTALL_INVENTORY_SCRIPT)
        except ExecutionError as ex:
            log_debug(f"Uninstall inventory query failed: {ex}")
            return
        if not out.strip():
            return

        try:
            items = json.loads(out)
        except json.JSONDecodeError as ex:
            log_debug(f"Uninstall inventory is not JSON: {ex}")
            return
        if isinstance(items, dict):
            items = [items]

        matcher = self.ctx.matcher
        for item in items:
            if not isinstance(item, dict):
                continue
            name = item.get("DisplayName") or ""
            location = item.get("InstallLocation") or ""
            if not (matcher.contains_keyword(name) or matcher.contains_keyword(location)):
                continue
            detail = " | ".join(x for x in (name, location) if x)
            self.run.add(f"[Amcache/Inventory] {matcher.tag(name, location)}{detail}")

    def scan_appcompat(self) -> None:
        matcher = self.ctx.matcher
        for path in APPCOMPAT_KEYS:
            self.run.check()
            try:
                out = self.run_cmd(f'reg query "{path}" /s')
            except ExecutionError as ex:
                log_debug(f"{path}: {ex}")
                continue

            for value in parse_reg_query(out):
                if "\\" in value.name:
                    subject = value.name
                elif value.type in REG_STRING_TYPES:
                    subject = value.data
                else:
                    continue
                if matcher.contains_keyword(subject):
                    self.run.add(f"[Amcache/AppCompat] {matcher.tag(subject)}{value.name} = {value.data}")

    def scan_recent_file_cache(self) -> None:
        bcf = os.path.join(self.programs_dir(), "RecentFileCache.bcf")
        try:
            with open(bcf, "rb") as fp:
                blob = fp.read()
        except FileNotFoundError:
            return
        except OSError as ex:
            log_debug(f"Cannot read {bcf}: {ex}")
            return

        matcher = self.ctx.matcher
        for path in extract_utf16_paths(blob):
            if matcher.contains_keyword(path):
                self.run.add(f"[Amcache/RecentFileCache] {matcher.tag(path)}{path}")

    def collect(self) -> None:
        steps = (
            ("Amcache.hve", self.scan_hive),
            ("Uninstall inventory", self.scan_inventory),
            ("AppCompat keys", self.scan_appcompat),
            ("RecentFileCache.bcf", self.scan_recent_file_cache),
        )
        for i, (label, step) in enumerate(steps, 1):
            self.run.check()
            self.run.progress(i, len(steps), label)
            step()
