"""
Probes that look at names on disk: AppData trees, the Prefetch folder, the
Recent items folder and game installation directories.
"""

import os
import time
from pathlib import Path

from ..decoders.binary import read_lnk_target, split_prefetch_name
from ..decoders.filetime import format_timestamp
from ..log import log_debug
from ..walker import HIDDEN_SUFFIX, walk_tree
from .base import ProbeBase, probe

LNK_READ_LIMIT = 64 * 1024


def user_profile() -> str:
    return os.environ.get("USERPROFILE") or str(Path.home())


def appdata_roaming() -> str:
    return os.environ.get("APPDATA") or os.path.join(user_profile(), "AppData", "Roaming")


def appdata_local() -> str:
    return os.environ.get("LOCALAPPDATA") or os.path.join(user_profile(), "AppData", "Local")


def _basename(path: str) -> str:
    return path.replace("/", "\\").rsplit("\\", 1)[-1]


def walker_finding(source: str, matcher, line: str) -> str:
    name = _basename(line.removesuffix(HIDDEN_SUFFIX))
    return f"[{source}] {matcher.tag(name)}{line}"


def win_join(*parts: str) -> str:
    return "\\".join(p.rstrip("\\/") for p in parts)


class _WalkingProbe(ProbeBase):
    """Base for probes that walk a list of (root, depth, extensions) targets."""

    source = ""

    def walk_targets(self, targets: list[tuple[str, int, tuple[str, ...]]]) -> None:
        existing = [t for t in targets if os.path.isdir(t[0])]
        settings = self.ctx.settings
        matcher = self.ctx.matcher

        for i, (root, depth, extensions) in enumerate(existing, 1):
            self.run.check()
            self.run.progress(i, len(existing), root)
            walk_tree(
                root,
                depth,
                extensions,
                settings.excluded_directories,
                matcher,
                token=self.run.token,
                on_match=lambda line: self.run.add(walker_finding(self.source, matcher, line)),
            )


@probe(
    "appdata",
    "AppData Scanner",
    "Scanning AppData and temp folders by keywords",
    "filesystem",
)
class AppDataProbe(_WalkingProbe):
    source = "AppData"

    def targets(self) -> list[tuple[str, int, tuple[str, ...]]]:
        s = self.ctx.settings
        out = [
            (appdata_roaming(), s.appdata_scan_depth, ()),
            (appdata_local(), s.appdata_scan_depth, ()),
            (os.path.join(user_profile(), "AppData", "LocalLow"), s.appdata_scan_depth, ()),
        ]
        windows_temp = win_join(self.ctx.config.windows.windows_dir, "Temp")
        out.append((windows_temp, s.windows_scan_depth, ()))

        seen: set[str] = set()
        unique = []
        for t in out:
            key = os.path.normcase(t[0])
            if key not in seen:
                seen.add(key)
                unique.append(t)
        return unique

    def collect(self) -> None:
        self.walk_targets(self.targets())


@probe(
    "prefetch",
    "Prefetch Scanner",
    "Scanning Windows Prefetch folder",
    "filesystem",
)
class PrefetchProbe(ProbeBase):
    def collect(self) -> None:
        folder = self.ctx.config.windows.prefetch_dir
        if not os.path.isdir(folder):
            log_debug(f"Prefetch folder not found: {folder}")
            return

        with os.scandir(folder) as it:
            entries = sorted((e for e in it if e.name.lower().endswith(".pf")), key=lambda e: e.name.lower())

        matcher = self.ctx.matcher
        for i, entry in enumerate(entries, 1):
            self.run.check()
            self.run.progress(i, len(entries), entry.name)

            parts = split_prefetch_name(entry.name)
            exe = parts[0] if parts else entry.name[:-3]
            if not matcher.contains_keyword(exe):
                continue

            line = f"[Prefetch] {matcher.tag(exe)}{exe} | {entry.path}"
            try:
                line += f" | Last run: {format_timestamp(int(entry.stat().st_mtime * 1000))}"
            except OSError:
                pass
            self.run.add(line)


@probe(
    "recentfiles",
    "Recent Files Scanner",
    "Scanning recently accessed files",
    "filesystem",
)
class RecentFilesProbe(ProbeBase):
    def folder(self) -> str:
        return os.path.join(appdata_roaming(), "Microsoft", "Windows", "Recent")

    def collect(self) -> None:
        folder = self.folder()
        if not os.path.isdir(folder):
            return

        cutoff = time.time() - self.ctx.settings.recent_files_days * 86400
        with os.scandir(folder) as it:
            entries = sorted((e for e in it if e.is_file(follow_symlinks=False)), key=lambda e: e.name.lower())

        matcher = self.ctx.matcher
        for i, entry in enumerate(entries, 1):
            self.run.check()
            self.run.progress(i, len(entries), entry.name)

            try:
                mtime = entry.stat().st_mtime
            except OSError:
                continue
            if mtime < cutoff:
                continue

            base = entry.name[:-4] if entry.name.lower().endswith(".lnk") else entry.name
            target = None
            if entry.name.lower().endswith(".lnk"):
                try:
                    with open(entry.path, "rb") as fp:
                        target = read_lnk_target(fp.read(LNK_READ_LIMIT))
                except OSError as ex:
                    log_debug(f"Cannot read {entry.path}: {ex}")

            if not (matcher.contains_keyword(base) or matcher.contains_keyword(target)):
                continue

            line = f"[Recent] {matcher.tag(base, target)}{entry.path}"
            if target:
                line += f" -> {target}"
            line += f" | {format_timestamp(int(mtime * 1000))}"
            self.run.add(line)


STEAM_COMMON_LAYOUTS = (
    ("Program Files (x86)", "Steam", "steamapps", "common"),
    ("Program Files", "Steam", "steamapps", "common"),
    ("Steam", "steamapps", "common"),
    ("SteamLibrary", "steamapps", "common"),
)


@probe(
    "gamefolder",
    "Game Folder Scanner",
    "Scanning game installation directories",
    "filesystem",
)
class GameFolderProbe(_WalkingProbe):
    source = "Game Folder"

    def targets(self) -> list[tuple[str, int, tuple[str, ...]]]:
        s = self.ctx.settings
        exts = s.executable_extensions
        steam = self.ctx.config.steam
        win = self.ctx.config.windows

        roots: list[tuple[str, int, tuple[str, ...]]] = []
        for drive in ("C:", *steam.additional_drives):
            for layout in STEAM_COMMON_LAYOUTS:
                roots.append((win_join(drive, *layout), s.user_folders_scan_depth, exts))
        for extra in steam.extra_roots:
            roots.append((os.path.join(extra, "steamapps", "common"), s.user_folders_scan_depth, exts))

        roots.append((win.program_files, s.program_files_scan_depth, exts))
        roots.append((win.program_files_x86, s.program_files_scan_depth, exts))
        return roots

    def collect(self) -> None:
        self.walk_targets(self.targets())
