"""
Scan orchestration.

Probes are dispatched to one thread pool per group; all groups run at the
same time. A single control loop wakes every poll interval to collect
finished probes, expire probes that overran their group deadline and react to
run-wide cancellation. The batch never blocks on a probe once it has been
given a terminal result.
"""

import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from datetime import datetime, timezone
from typing import Callable

from .config import GROUP_NAMES
from .context import ScanContext, build_context
from .errors import ProbeTimeout, ScanAlreadyRunning
from .executor import ProcessExecutor
from .log import log_debug, log_error, log_info, log_step, log_success, log_warn
from .models import AppConfig, GroupSettings, ProbeStatus, ScanProgress, ScanResult
from .probes import PROBE_TYPES, build_probes
from .probes.base import CANCELLED_MESSAGE, Probe

ResultSink = Callable[[ScanResult], None]
ProgressCallback = Callable[[ScanProgress], None]

FALLBACK_GROUP = GroupSettings(concurrency=1, timeout_s=60.0)


class ProgressGate:
    """Forwards progress events until closed; nothing passes afterwards."""

    def __init__(self, sink: ProgressCallback | None):
        self._sink = sink
        self._lock = threading.Lock()
        self._closed = False

    def emit(self, progress: ScanProgress) -> None:
        with self._lock:
            if self._closed or self._sink is None:
                return
            try:
                self._sink(progress)
            except Exception as ex:
                log_debug(f"Progress callback failed: {ex}")

    def close(self) -> None:
        with self._lock:
            self._closed = True

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._closed


class _Slot:
    """Book-keeping for one probe inside a batch."""

    def __init__(self, index: int, probe: Probe, group: GroupSettings):
        self.index = index
        self.probe = probe
        self.group = group
        self.future: Future | None = None
        self.started: float | None = None
        self.result: ScanResult | None = None


def _fallback_result(probe: Probe, status: ProbeStatus, error: str) -> ScanResult:
    now = datetime.now(timezone.utc)
    return ScanResult(
        probe_id=probe.id,
        name=probe.name,
        success=False,
        status=status,
        findings=(),
        start_time=now,
        end_time=now,
        error=error,
    )


class Orchestrator:
    def __init__(
        self,
        ctx: ScanContext,
        probes: list[Probe],
        on_progress: ProgressCallback | None = None,
        on_result: ResultSink | None = None,
    ):
        self.ctx = ctx
        self.probes = probes
        self.on_result = on_result
        self.gate = ProgressGate(on_progress)
        self.poll_interval_s = ctx.config.orchestration.poll_interval_s
        self._lock = threading.Lock()
        self._slots: list[_Slot] = []
        self.abandoned: list[Future] = []

    def group_settings(self, group: str) -> GroupSettings:
        return self.ctx.config.orchestration.groups.get(group, FALLBACK_GROUP)

    # Worker side
    def _sink_for(self, slot: _Slot) -> ProgressCallback:
        def sink(progress: ScanProgress) -> None:
            if slot.result is None:
                self.gate.emit(progress)
        return sink

    def _run_slot(self, slot: _Slot) -> ScanResult:
        p = slot.probe
        with self._lock:
            if self.ctx.cancel.cancelled:
                return p.partial_result(ProbeStatus.CANCELLED, CANCELLED_MESSAGE)
            p.reset()
            slot.started = time.monotonic()

        try:
            return p.scan(self._sink_for(slot))
        except Exception as ex:
            log_error(f"{p.name} crashed: {ex}")
            try:
                return p.partial_result(ProbeStatus.ERRORED, str(ex) or type(ex).__name__)
            except Exception:
                return _fallback_result(p, ProbeStatus.ERRORED, str(ex) or type(ex).__name__)

    # Control side
    def _finish(self, slot: _Slot, result: ScanResult) -> None:
        if slot.result is not None:
            return
        slot.result = result
        if result.status == ProbeStatus.COMPLETED:
            log_success(f"Finished: {result.name} ({result.count} findings, {result.duration_ms}ms)")
        else:
            log_warn(f"{result.name}: {result.status.value} ({result.error})")
        if self.on_result is not None:
            try:
                self.on_result(result)
            except Exception as ex:
                log_debug(f"Result callback failed: {ex}")

    def _expire(self, slot: _Slot, status: ProbeStatus, error: str) -> None:
        slot.probe.cancel("timeout" if status == ProbeStatus.TIMED_OUT else "cancelled")
        try:
            result = slot.probe.partial_result(status, error)
        except Exception as ex:
            log_debug(f"{slot.probe.name}: partial result unavailable: {ex}")
            result = _fallback_result(slot.probe, status, error)
        self._finish(slot, result)

    def _collect_done(self, done: set[Future], by_future: dict[Future, _Slot]) -> None:
        for fut in done:
            slot = by_future[fut]
            if fut.cancelled():
                self._finish(slot, _fallback_result(slot.probe, ProbeStatus.CANCELLED, CANCELLED_MESSAGE))
                continue
            exc = fut.exception()
            if exc is not None:
                self._finish(slot, _fallback_result(slot.probe, ProbeStatus.ERRORED, str(exc)))
            else:
                self._finish(slot, fut.result())

    def _check_deadlines(self, pending: set[Future], by_future: dict[Future, _Slot]) -> None:
        now = time.monotonic()
        for fut in list(pending):
            slot = by_future[fut]
            if slot.started is None or slot.result is not None:
                continue
            limit = slot.group.timeout_s
            if now - slot.started >= limit:
                log_warn(f"{slot.probe.name} exceeded {limit:g}s, stopping it")
                self._expire(slot, ProbeStatus.TIMED_OUT, str(ProbeTimeout(limit)))
                pending.discard(fut)

    def _cancel_all(self, pending: set[Future], by_future: dict[Future, _Slot]) -> None:
        self.gate.close()
        with self._lock:
            for fut in list(pending):
                slot = by_future[fut]
                # Queued probes never start; running ones are told to stop
                fut.cancel()
                self._expire(slot, ProbeStatus.CANCELLED, CANCELLED_MESSAGE)
        pending.clear()

    def drain(self, timeout_s: float) -> bool:
        """Wait for workers the run stopped waiting on. True when all have exited."""
        if not self.abandoned:
            return True
        _, not_done = wait(self.abandoned, timeout=timeout_s)
        if not_done:
            log_warn(f"{len(not_done)} probe worker(s) still busy after {timeout_s:g}s")
        return not not_done

    def cancel(self, reason: str = "cancelled") -> None:
        """Cancel the whole run. No progress event is delivered after this returns."""
        self.ctx.cancel.cancel(reason)
        self.gate.close()

    def run(self) -> list[ScanResult]:
        if not self.probes:
            return []

        self._slots = [_Slot(i, p, self.group_settings(p.group)) for i, p in enumerate(self.probes)]

        groups: dict[str, list[_Slot]] = {}
        for slot in self._slots:
            groups.setdefault(slot.probe.group, []).append(slot)

        pools: list[ThreadPoolExecutor] = []
        by_future: dict[Future, _Slot] = {}
        for name in sorted(groups, key=lambda g: GROUP_NAMES.index(g) if g in GROUP_NAMES else len(GROUP_NAMES)):
            settings = self.group_settings(name)
            pool = ThreadPoolExecutor(max_workers=max(1, settings.concurrency), thread_name_prefix=f"probe-{name}")
            pools.append(pool)
            log_step(f"Group {name}: {len(groups[name])} probes (workers={settings.concurrency}, timeout={settings.timeout_s:g}s)")
            for slot in groups[name]:
                slot.future = pool.submit(self._run_slot, slot)
                by_future[slot.future] = slot

        pending = set(by_future)
        try:
            while pending:
                done, _ = wait(pending, timeout=self.poll_interval_s, return_when=FIRST_COMPLETED)
                pending -= done
                self._collect_done(done, by_future)

                if self.ctx.cancel.cancelled:
                    log_warn("Scan cancelled")
                    self._cancel_all(pending, by_future)
                    break

                self._check_deadlines(pending, by_future)
        finally:
            self.gate.close()
            for pool in pools:
                pool.shutdown(wait=False, cancel_futures=True)
            self.abandoned = [s.future for s in self._slots if s.future is not None and not s.future.done()]

        return [slot.result for slot in self._slots]


class ScanController:
    """
    The boundary a front end talks to. Only one scan may run per process;
    a second `start()` while one is active raises ScanAlreadyRunning.
    """

    _run_lock = threading.Lock()

    def __init__(
        self,
        config: AppConfig,
        executor: ProcessExecutor | None = None,
        factory: Callable[[ScanContext, list[str] | None], list[Probe]] = build_probes,
    ):
        self.config = config
        self.executor = executor
        self.factory = factory
        self._ctx: ScanContext | None = None
        self._orchestrator: Orchestrator | None = None
        self._ctx_lock = threading.Lock()

    def start(
        self,
        probe_ids: list[str] | None = None,
        on_progress: ProgressCallback | None = None,
        on_result: ResultSink | None = None,
    ) -> list[ScanResult]:
        if not ScanController._run_lock.acquire(blocking=False):
            raise ScanAlreadyRunning()
        try:
            ctx = build_context(self.config, self.executor)
            with self._ctx_lock:
                self._ctx = ctx
            probes = self.factory(ctx, probe_ids)
            orchestrator = Orchestrator(ctx, probes, on_progress, on_result)
            with self._ctx_lock:
                self._orchestrator = orchestrator
                if ctx.cancel.cancelled:
                    orchestrator.gate.close()
            log_info(f"Starting scan with {len(probes)} probes")
            results = orchestrator.run()
            # Timed-out workers may still be inside uncancellable work
            orchestrator.drain(self.config.orchestration.drain_timeout_s)
            return results
        finally:
            with self._ctx_lock:
                self._ctx = None
                self._orchestrator = None
            ScanController._run_lock.release()

    def cancel(self) -> None:
        with self._ctx_lock:
            if self._orchestrator is not None:
                self._orchestrator.cancel()
            elif self._ctx is not None:
                self._ctx.cancel.cancel("cancelled")

    @staticmethod
    def is_running() -> bool:
        return ScanController._run_lock.locked()

    @staticmethod
    def describe_probes() -> list[dict[str, str]]:
        return [
            {"id": cls.id, "name": cls.name, "description": cls.description, "group": cls.group}
            for cls in PROBE_TYPES.values()
        ]
