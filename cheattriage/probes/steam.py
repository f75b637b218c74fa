import os

from ..decoders.text import parse_reg_query
from ..decoders.vdf import library_folders, parse_steam_accounts, validate_account
from ..errors import ExecutionError
from ..log import log_debug
from ..walker import walk_tree
from .base import ProbeBase, probe
from .filesystem import walker_finding, win_join

STEAM_REG_KEY = r"HKCU\Software\Valve\Steam"

STEAM_INSTALL_LAYOUTS = (
    ("Program Files (x86)", "Steam"),
    ("Program Files", "Steam"),
    ("Steam",),
)


def _read_text(path: str) -> str | None:
    try:
        with open(path, "r", encoding="utf-8", errors="replace") as fp:
            return fp.read()
    except OSError as ex:
        log_debug(f"Cannot read {path}: {ex}")
        return None


@probe(
    "steam",
    "Steam Scanner",
    "Scanning Steam accounts, libraries and folders",
    "filesystem",
)
class SteamProbe(ProbeBase):
    def registry_install(self) -> str | None:
        try:
            out = self.run_cmd(f'reg query "{STEAM_REG_KEY}" /v SteamPath',
                               timeout_ms=self.ctx.config.timeouts.service_ms)
        except ExecutionError as ex:
            log_debug(f"Steam registry key not readable: {ex}")
            return None
        for v in parse_reg_query(out):
            if v.name.lower() == "steampath" and v.data:
                return v.data
        return None

    def candidates(self) -> list[str]:
        steam = self.ctx.config.steam
        out = list(steam.extra_roots)
        reg = self.registry_install()
        if reg:
            out.append(reg)
        for drive in ("C:", *steam.additional_drives):
            for layout in STEAM_INSTALL_LAYOUTS:
                out.append(win_join(drive, *layout))
        return out

    def find_install(self) -> str | None:
        rel = self.ctx.config.steam.login_users_relative_path
        for root in self.candidates():
            self.run.check()
            if os.path.isfile(os.path.join(root, *rel.split("\\"))):
                return root
        return None

    def report_accounts(self, install: str) -> None:
        rel = self.ctx.config.steam.login_users_relative_path
        text = _read_text(os.path.join(install, *rel.split("\\")))
        matcher = self.ctx.matcher

        for account in parse_steam_accounts(text):
            line = f"[Steam Account] {matcher.tag(account.account_name, account.persona_name)}"
            line += f"{account.account_name} (SteamID: {account.steam_id})"
            if account.persona_name:
                line += f" - {account.persona_name}"
            if account.remember_password:
                line += " | remembered"
            self.run.add(line)

            for problem in validate_account(account):
                self.run.add(f"[Steam Account] {account.steam_id}: {problem}")

    def libraries(self, install: str) -> list[str]:
        rel = self.ctx.config.steam.library_folders_relative_path
        text = _read_text(os.path.join(install, *rel.split("\\")))
        return [p for p in library_folders(text) if os.path.normcase(p) != os.path.normcase(install)]

    def collect(self) -> None:
        install = self.find_install()
        if install is None:
            log_debug("Steam installation not found")
            return

        self.run.progress(1, 3, install)
        self.report_accounts(install)

        libs = self.libraries(install)
        for lib in libs:
            self.run.add(f"[Steam Library] {self.ctx.matcher.tag(lib)}{lib}")

        s = self.ctx.settings
        targets = [install] + [os.path.join(lib, "steamapps", "common") for lib in libs]
        for i, root in enumerate(targets, 1):
            self.run.check()
            self.run.progress(i, len(targets), root)
            walk_tree(
                root,
                s.steam_scan_depth,
                s.executable_extensions,
                s.excluded_directories,
                self.ctx.matcher,
                token=self.run.token,
                on_match=lambda line: self.run.add(walker_finding("Steam", self.ctx.matcher, line)),
            )
