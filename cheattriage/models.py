from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class ProbeStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"
    ERRORED = "errored"

    @property
    def terminal(self) -> bool:
        return self not in (ProbeStatus.IDLE, ProbeStatus.RUNNING)


@dataclass(frozen=True)
class ScanSettings:
    appdata_scan_depth: int = 3
    windows_scan_depth: int = 1
    program_files_scan_depth: int = 2
    user_folders_scan_depth: int = 3
    steam_scan_depth: int = 2
    recent_files_days: int = 7
    executable_extensions: tuple[str, ...] = (".exe", ".bat", ".cmd", ".ps1")
    excluded_directories: frozenset[str] = frozenset()


@dataclass(frozen=True)
class KeywordSet:
    patterns: tuple[str, ...] = ()
    exact_match: frozenset[str] = frozenset()


@dataclass(frozen=True)
class ScanProgress:
    probe_name: str
    current_item: int
    total_items: int
    current_path: str = ""
    percentage: float = 0.0


@dataclass(frozen=True)
class ScanResult:
    probe_id: str
    name: str
    success: bool
    status: ProbeStatus
    findings: tuple[str, ...]
    start_time: datetime
    end_time: datetime
    error: str | None = None

    @property
    def duration_ms(self) -> int:
        return int((self.end_time - self.start_time).total_seconds() * 1000)

    @property
    def count(self) -> int:
        return len(self.findings)

    @property
    def has_findings(self) -> bool:
        return bool(self.findings)

    def to_dict(self) -> dict[str, Any]:
        return {
            "probe": self.probe_id,
            "name": self.name,
            "success": self.success,
            "status": self.status.value,
            "error": self.error,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat(),
            "duration_ms": self.duration_ms,
            "count": self.count,
            "findings": list(self.findings),
        }


@dataclass
class SteamAccount:
    steam_id: str
    account_name: str = ""
    persona_name: str | None = None
    remember_password: bool = False
    timestamp: int | None = None


@dataclass(frozen=True)
class RegistryScanKey:
    path: str
    name: str


@dataclass(frozen=True)
class GroupSettings:
    concurrency: int
    timeout_s: float


@dataclass(frozen=True)
class OrchestrationSettings:
    process_limit: int = 15
    poll_interval_s: float = 0.25
    progress_interval_s: float = 0.1
    drain_timeout_s: float = 5.0
    groups: dict[str, GroupSettings] = field(default_factory=lambda: {
        "filesystem": GroupSettings(concurrency=5, timeout_s=60.0),
        "registry": GroupSettings(concurrency=4, timeout_s=60.0),
        "process": GroupSettings(concurrency=2, timeout_s=45.0),
    })


@dataclass(frozen=True)
class Timeouts:
    default_process_ms: int = 10_000
    service_ms: int = 5_000
    powershell_ms: int = 15_000
    max_output_bytes: int = 10 * 1024 * 1024


@dataclass(frozen=True)
class WindowsPaths:
    windows_dir: str = "C:\\Windows"
    prefetch_dir: str = "C:\\Windows\\Prefetch"
    program_files: str = "C:\\Program Files"
    program_files_x86: str = "C:\\Program Files (x86)"


@dataclass(frozen=True)
class SteamPaths:
    additional_drives: tuple[str, ...] = ("D:", "E:", "F:", "G:")
    login_users_relative_path: str = "config\\loginusers.vdf"
    library_folders_relative_path: str = "steamapps\\libraryfolders.vdf"
    extra_roots: tuple[str, ...] = ()


@dataclass(frozen=True)
class AppConfig:
    keywords: KeywordSet = field(default_factory=KeywordSet)
    scanning: ScanSettings = field(default_factory=ScanSettings)
    windows: WindowsPaths = field(default_factory=WindowsPaths)
    steam: SteamPaths = field(default_factory=SteamPaths)
    registry_keys: tuple[RegistryScanKey, ...] = ()
    orchestration: OrchestrationSettings = field(default_factory=OrchestrationSettings)
    timeouts: Timeouts = field(default_factory=Timeouts)
    webhook_url: str = ""
