"""
Probe contract.

A probe is any object with the attributes and methods of `Probe`. The shared
lifecycle (state machine, cancellation token, findings buffer, throttled
progress, result construction) lives in `ProbeRun`, which every probe owns.
`ProbeBase` gives concrete probes that surface; the `probe()` decorator
names and registers them.
"""

import threading
import time
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Protocol

from ..context import CancelToken, ScanContext
from ..errors import Cancelled, TriageError
from ..log import log_debug, log_error
from ..models import ProbeStatus, ScanProgress, ScanResult

ProgressSink = Callable[[ScanProgress], None]

CANCELLED_MESSAGE = "Scan cancelled"

PROBE_TYPES: dict[str, type] = {}


class Probe(Protocol):
    id: str
    name: str
    description: str
    group: str

    @property
    def status(self) -> ProbeStatus: ...

    def scan(self, progress: ProgressSink | None = None) -> ScanResult: ...

    def cancel(self, reason: str = "cancelled") -> None: ...

    def reset(self) -> None: ...

    def partial_result(self, status: ProbeStatus, error: str) -> ScanResult: ...


class ThrottledProgress:
    """Rate-limits progress events; 0% and 100% always go through."""

    def __init__(self, min_interval_s: float = 0.1, clock: Callable[[], float] = time.monotonic):
        self.min_interval_s = min_interval_s
        self._clock = clock
        self._last: float | None = None

    def emit(self, progress: ScanProgress, sink: ProgressSink) -> bool:
        now = self._clock()
        forced = progress.percentage <= 0 or progress.percentage >= 100
        if not forced and self._last is not None and now - self._last < self.min_interval_s:
            return False
        self._last = now
        sink(progress)
        return True

    def reset(self) -> None:
        self._last = None


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ProbeRun:
    def __init__(self, probe_id: str, name: str, progress_interval_s: float = 0.1):
        self.probe_id = probe_id
        self.name = name
        self.status = ProbeStatus.IDLE
        self.token: CancelToken | None = None
        self._lock = threading.Lock()
        self._findings: list[str] = []
        self._seen: set[str] = set()
        self._start = _now()
        self._pending_cancel: str | None = None
        self._throttle = ThrottledProgress(progress_interval_s)
        self._sink: ProgressSink | None = None

    # Lifecycle
    def begin(self, parent: CancelToken, sink: ProgressSink | None = None) -> None:
        with self._lock:
            self._findings.clear()
            self._seen.clear()
            self._start = _now()
            self.status = ProbeStatus.RUNNING
            self.token = parent.child()
            if self._pending_cancel is not None:
                self.token.cancel(self._pending_cancel)
            self._throttle.reset()
            self._sink = sink

    def cancel(self, reason: str = "cancelled") -> None:
        with self._lock:
            if self.token is None:
                self._pending_cancel = reason
            else:
                self.token.cancel(reason)

    def reset(self) -> None:
        with self._lock:
            self.status = ProbeStatus.IDLE
            self.token = None
            self._pending_cancel = None
            self._findings.clear()
            self._seen.clear()
            self._sink = None

    def check(self) -> None:
        """Raise Cancelled if this probe (or the whole run) was cancelled."""
        if self.token is not None:
            self.token.raise_if_cancelled()

    @property
    def cancelled(self) -> bool:
        return self.token is not None and self.token.cancelled

    # Findings
    def add(self, finding: str) -> bool:
        with self._lock:
            if finding in self._seen:
                return False
            self._seen.add(finding)
            self._findings.append(finding)
            return True

    def extend(self, findings: Iterable[str]) -> None:
        for f in findings:
            self.add(f)

    @property
    def findings(self) -> tuple[str, ...]:
        with self._lock:
            return tuple(self._findings)

    # Progress
    def progress(self, current: int, total: int, path: str = "", percentage: float | None = None) -> None:
        sink = self._sink
        if sink is None:
            return
        if percentage is None:
            percentage = (current / total * 100) if total else 0.0
        event = ScanProgress(
            probe_name=self.name,
            current_item=current,
            total_items=total,
            current_path=path,
            percentage=round(min(max(percentage, 0.0), 100.0), 1),
        )
        self._throttle.emit(event, sink)

    # Results
    def _finish(self, status: ProbeStatus, error: str | None) -> ScanResult:
        with self._lock:
            if not self.status.terminal:
                self.status = status
            return ScanResult(
                probe_id=self.probe_id,
                name=self.name,
                success=error is None,
                status=self.status,
                findings=tuple(self._findings),
                start_time=self._start,
                end_time=_now(),
                error=error,
            )

    def complete(self) -> ScanResult:
        return self._finish(ProbeStatus.COMPLETED, None)

    def fail(self, error: str) -> ScanResult:
        return self._finish(ProbeStatus.ERRORED, error or "Unknown error")

    def cancelled_result(self) -> ScanResult:
        return self._finish(ProbeStatus.CANCELLED, CANCELLED_MESSAGE)

    def partial_result(self, status: ProbeStatus, error: str) -> ScanResult:
        """Snapshot of what was gathered so far, marking the probe terminal."""
        return self._finish(status, error)

    def execute(self, parent: CancelToken, body: Callable[[], None], sink: ProgressSink | None) -> ScanResult:
        self.begin(parent, sink)
        try:
            self.progress(0, 1, "Starting...", 0)
            body()
        except Cancelled:
            return self.cancelled_result()
        except TriageError as ex:
            if self.cancelled:
                return self.cancelled_result()
            log_debug(f"{self.name}: {ex}")
            return self.fail(str(ex))
        except Exception as ex:
            if self.cancelled:
                return self.cancelled_result()
            log_error(f"{self.name} error: {ex}")
            return self.fail(str(ex) or type(ex).__name__)

        if self.cancelled:
            return self.cancelled_result()
        self.progress(1, 1, "Done", 100)
        return self.complete()


class ProbeBase:
    """
    Shared `Probe` surface. Subclasses implement `collect()` and may override
    `setup()` and `on_reset()`; lifecycle calls delegate to a ProbeRun.
    """

    id = ""
    name = ""
    description = ""
    group = ""

    def __init__(self, ctx: ScanContext):
        self.ctx = ctx
        self.run = ProbeRun(self.id, self.name, ctx.config.orchestration.progress_interval_s)
        self.setup()

    def setup(self) -> None:
        pass

    def on_reset(self) -> None:
        pass

    def collect(self) -> None:
        raise NotImplementedError

    @property
    def status(self) -> ProbeStatus:
        return self.run.status

    def scan(self, progress: ProgressSink | None = None) -> ScanResult:
        return self.run.execute(self.ctx.cancel, self.collect, progress)

    def cancel(self, reason: str = "cancelled") -> None:
        self.run.cancel(reason)

    def reset(self) -> None:
        self.run.reset()
        self.on_reset()

    def partial_result(self, status: ProbeStatus, error: str) -> ScanResult:
        return self.run.partial_result(status, error)

    def run_cmd(self, command: str, **kwargs: Any) -> str:
        self.run.check()
        return self.ctx.executor.run(command, token=self.run.token, **kwargs)

    def run_powershell(self, script: str, **kwargs: Any) -> str:
        self.run.check()
        kwargs.setdefault("timeout_ms", self.ctx.config.timeouts.powershell_ms)
        return self.ctx.executor.run_powershell(script, token=self.run.token, **kwargs)


def probe(probe_id: str, name: str, description: str, group: str):
    """Class decorator: fills in a ProbeBase subclass's identity and registers it."""
    def wrap(cls):
        cls.id = probe_id
        cls.name = name
        cls.description = description
        cls.group = group
        PROBE_TYPES[probe_id] = cls
        return cls

    return wrap
