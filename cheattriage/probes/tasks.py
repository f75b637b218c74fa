from ..decoders.text import parse_csv
from .base import ProbeBase, probe

# Vendor task folders that are never cheat persistence
SYSTEM_TASK_PREFIXES = (
    "\\microsoft\\",
    "\\windows\\",
    "\\apple\\",
    "\\google\\update",
    "\\mozilla\\",
    "\\nvidia\\",
    "\\intel\\",
    "\\amd\\",
    "\\adobe\\",
)

# schtasks /query /fo CSV /v columns
COL_TASK_NAME = 1
COL_STATUS = 3
COL_TASK_TO_RUN = 8

SCHTASKS_MAX_OUTPUT = 20 * 1024 * 1024


def is_system_task(name: str) -> bool:
    lowered = name.lower()
    return any(prefix in lowered for prefix in SYSTEM_TASK_PREFIXES)


@probe(
    "scheduledtasks",
    "Scheduled Tasks Scanner",
    "Scanning Windows Task Scheduler for suspicious persistence entries",
    "process",
)
class ScheduledTasksProbe(ProbeBase):
    def collect(self) -> None:
        self.run.progress(1, 3, "Querying Task Scheduler...")
        out = self.run_cmd("schtasks /query /fo CSV /v /nh", max_output_bytes=SCHTASKS_MAX_OUTPUT)

        rows = parse_csv(out)
        self.run.progress(2, 3, "Checking tasks...")

        matcher = self.ctx.matcher
        seen: set[str] = set()
        for row in rows:
            self.run.check()
            if len(row) <= COL_TASK_TO_RUN:
                continue

            name, status, command = row[COL_TASK_NAME], row[COL_STATUS], row[COL_TASK_TO_RUN]
            if not name or name == "TaskName" or is_system_task(name):
                continue
            if name.lower() in seen:
                continue
            seen.add(name.lower())

            if not (matcher.contains_keyword(name) or matcher.contains_keyword(command)):
                continue

            line = f"[Scheduled Task] {matcher.tag(name, command)}{name}"
            if command:
                line += f" | CMD: {command}"
            if status:
                line += f" | Status: {status}"
            self.run.add(line)
