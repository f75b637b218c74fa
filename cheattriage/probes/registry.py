"""
Probes over `reg query` dumps: the configured evidence keys (MuiCache,
AppSwitched, RunMRU, ...) and the Explorer shellbags.
"""

from ..decoders.binary import extract_strings
from ..decoders.text import REG_STRING_TYPES, parse_reg_query
from ..errors import ExecutionError
from ..log import log_debug
from .base import ProbeBase, probe

SHELLBAG_KEYS = (
    r"HKCU\Software\Microsoft\Windows\Shell\BagMRU",
    r"HKCU\Software\Microsoft\Windows\Shell\Bags",
    r"HKCU\Software\Classes\Local Settings\Software\Microsoft\Windows\Shell\BagMRU",
    r"HKCU\Software\Classes\Local Settings\Software\Microsoft\Windows\Shell\Bags",
    r"HKCU\Software\Classes\Wow6432Node\Local Settings\Software\Microsoft\Windows\Shell\BagMRU",
    r"HKCU\Software\Classes\Wow6432Node\Local Settings\Software\Microsoft\Windows\Shell\Bags",
)

SHELLBAG_MAX_OUTPUT = 20 * 1024 * 1024

# Strings carved from shell items that are structure, not folder names
_SHELLBAG_NOISE = frozenset({"1SPS", "NTFS"})


@probe(
    "registry",
    "Registry Scanner",
    "Registry search by keywords (MuiCache, AppSwitched, ShowJumpView, RunMRU, Run)",
    "registry",
)
class RegistryProbe(ProbeBase):
    def query(self, path: str) -> str | None:
        try:
            return self.run_cmd(f'reg query "{path}" /s')
        except ExecutionError as ex:
            log_debug(f"reg query {path} failed: {ex}")
            return None

    def collect(self) -> None:
        keys = self.ctx.config.registry_keys
        matcher = self.ctx.matcher

        for i, key in enumerate(keys, 1):
            self.run.check()
            self.run.progress(i, len(keys), key.path)

            out = self.query(key.path)
            if not out:
                continue

            for value in parse_reg_query(out):
                # Value data is matched, key paths are not. Value names only
                # count when they are paths (MuiCache, AppSwitched).
                data_hit = value.type in REG_STRING_TYPES and matcher.contains_keyword(value.data)
                name_hit = "\\" in value.name and matcher.contains_keyword(value.name)
                if not (data_hit or name_hit):
                    continue
                tag = matcher.tag(value.data if data_hit else value.name)
                self.run.add(f"[{key.name}] {tag}{value.name} = {value.data}")


@probe(
    "shellbags",
    "Shellbags Scanner",
    "Scanning Shellbags for folder access history",
    "registry",
)
class ShellbagsProbe(ProbeBase):
    def collect(self) -> None:
        matcher = self.ctx.matcher
        seen: set[str] = set()

        for i, path in enumerate(SHELLBAG_KEYS, 1):
            self.run.check()
            self.run.progress(i, len(SHELLBAG_KEYS), path)

            try:
                out = self.run_cmd(f'reg query "{path}" /s', max_output_bytes=SHELLBAG_MAX_OUTPUT)
            except ExecutionError as ex:
                log_debug(f"Shellbags key {path} not readable: {ex}")
                continue

            for value in parse_reg_query(out):
                self.run.check()
                for text in self._strings(value.type, value.data):
                    lowered = text.lower()
                    if lowered in seen or not matcher.contains_keyword(text):
                        continue
                    seen.add(lowered)
                    self.run.add(f"[Shellbags] {matcher.tag(text)}{text} | {value.key}")

    @staticmethod
    def _strings(value_type: str, data: str) -> list[str]:
        if value_type != "REG_BINARY":
            return [data] if data else []
        try:
            blob = bytes.fromhex(data)
        except ValueError:
            return []
        return [s.strip() for s in extract_strings(blob) if s.strip() not in _SHELLBAG_NOISE]
