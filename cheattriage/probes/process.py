from dataclasses import dataclass

import psutil

from ..decoders.text import parse_csv, parse_csv_records
from ..errors import ExecutionError
from ..log import log_debug
from .base import ProbeBase, probe

CMDLINE_LIMIT = 500

PROCESS_LIST_MAX_OUTPUT = 50 * 1024 * 1024

CIM_PROCESS_SCRIPT = (
    "Get-CimInstance Win32_Process | "
    "Select-Object Name,ProcessId,ExecutablePath,CommandLine | "
    "ConvertTo-Csv -NoTypeInformation"
)


@dataclass
class ProcessInfo:
    name: str
    pid: int
    exe: str = ""
    cmdline: str = ""


def _pid(text: str) -> int | None:
    text = text.strip()
    return int(text) if text.isdigit() else None


def parse_process_csv(text: str) -> list[ProcessInfo]:
    """wmic /format:csv or ConvertTo-Csv output with Name/ProcessId/ExecutablePath/CommandLine columns."""
    out: list[ProcessInfo] = []
    for rec in parse_csv_records(text):
        pid = _pid(rec.get("ProcessId", ""))
        name = rec.get("Name", "")
        if name and pid is not None:
            out.append(ProcessInfo(name, pid, rec.get("ExecutablePath", ""), rec.get("CommandLine", "")))
    return out


def parse_tasklist_csv(text: str) -> list[ProcessInfo]:
    """`tasklist /FO CSV /NH`: "Image Name","PID","Session Name",..."""
    out: list[ProcessInfo] = []
    for row in parse_csv(text):
        if len(row) >= 2 and (pid := _pid(row[1])) is not None:
            out.append(ProcessInfo(row[0], pid))
    return out


def psutil_processes() -> list[ProcessInfo]:
    out: list[ProcessInfo] = []
    for p in psutil.process_iter(["pid", "name", "exe", "cmdline"]):
        info = p.info
        out.append(ProcessInfo(
            name=info.get("name") or "",
            pid=info["pid"],
            exe=info.get("exe") or "",
            cmdline=" ".join(info.get("cmdline") or []),
        ))
    return out


@probe(
    "process",
    "Process Scanner",
    "Scanning running processes with paths and command lines",
    "process",
)
class ProcessProbe(ProbeBase):
    def sources(self):
        yield "wmic", lambda: parse_process_csv(self.run_cmd(
            "wmic process get Name,ProcessId,ExecutablePath,CommandLine /format:csv",
            max_output_bytes=PROCESS_LIST_MAX_OUTPUT,
        ))
        yield "powershell", lambda: parse_process_csv(self.run_powershell(
            CIM_PROCESS_SCRIPT, max_output_bytes=PROCESS_LIST_MAX_OUTPUT,
        ))
        yield "tasklist", lambda: parse_tasklist_csv(self.run_cmd("tasklist /FO CSV /NH"))
        yield "psutil", psutil_processes

    def processes(self) -> list[ProcessInfo]:
        for label, fetch in self.sources():
            self.run.check()
            try:
                procs = fetch()
            except (ExecutionError, psutil.Error) as ex:
                log_debug(f"Process list via {label} failed: {ex}")
                continue
            if procs:
                log_debug(f"Process list via {label}: {len(procs)} entries")
                return procs
        return []

    def collect(self) -> None:
        procs = self.processes()
        matcher = self.ctx.matcher
        seen: set[int] = set()

        for i, proc in enumerate(procs, 1):
            self.run.check()
            self.run.progress(i, len(procs), proc.name)

            if proc.pid in seen:
                continue
            seen.add(proc.pid)

            if not (matcher.contains_keyword(proc.name)
                    or matcher.contains_keyword(proc.exe)
                    or matcher.contains_keyword(proc.cmdline)):
                continue

            line = f"[Process] {matcher.tag(proc.name, proc.exe, proc.cmdline)}{proc.name} (PID: {proc.pid})"
            if proc.exe and proc.exe != proc.name:
                line += f" | Path: {proc.exe}"
            if proc.cmdline and proc.cmdline != proc.exe:
                cmd = proc.cmdline
                if len(cmd) > CMDLINE_LIMIT:
                    cmd = cmd[:CMDLINE_LIMIT] + "..."
                line += f" | CMD: {cmd}"
            self.run.add(line)
