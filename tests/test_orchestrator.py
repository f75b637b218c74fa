import threading
import time
import unittest

from cheattriage.config import GROUP_NAMES
from cheattriage.context import build_context
from cheattriage.errors import ScanAlreadyRunning
from cheattriage.models import GroupSettings, OrchestrationSettings, ProbeStatus, ScanProgress
from cheattriage.orchestrator import Orchestrator, ProgressGate, ScanController
from cheattriage.probes import ProbeRun
from tests.helpers import FakeExecutor, make_config


class FakeProbe:
    """Minimal probe: owns a ProbeRun and runs `body(run)` as its scan."""

    description = ""

    def __init__(self, ctx, probe_id, body, group="process"):
        self.id = probe_id
        self.name = f"Fake {probe_id}"
        self.group = group
        self.ctx = ctx
        self.run = ProbeRun(probe_id, self.name, 0.0)
        self.body = body

    @property
    def status(self):
        return self.run.status

    def scan(self, progress=None):
        return self.run.execute(self.ctx.cancel, lambda: self.body(self.run), progress)

    def cancel(self, reason="cancelled"):
        self.run.cancel(reason)

    def reset(self):
        self.run.reset()

    def partial_result(self, status, error):
        return self.run.partial_result(status, error)


class CrashingProbe(FakeProbe):
    def scan(self, progress=None):
        raise RuntimeError("crashed")


def quick(run):
    run.add("[Fake] quick")


def stalls(run):
    run.add("[Fake] partial")
    while True:
        run.progress(1, 2, "waiting")
        run.check()
        run.token.wait(0.01)


def boom(run):
    raise RuntimeError("boom")


def fast_config(process_timeout_s=5.0, concurrency=2):
    groups = {name: GroupSettings(concurrency, 5.0) for name in GROUP_NAMES}
    groups["process"] = GroupSettings(concurrency, process_timeout_s)
    return make_config(orchestration=OrchestrationSettings(
        poll_interval_s=0.02,
        progress_interval_s=0.0,
        groups=groups,
    ))


def wait_for(predicate, timeout=3.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


class TestOrchestrator(unittest.TestCase):

    def test_empty_batch(self):
        ctx = build_context(fast_config(), FakeExecutor())
        self.assertEqual(Orchestrator(ctx, []).run(), [])

    def test_results_in_input_order(self):
        ctx = build_context(fast_config(), FakeExecutor())
        probes = [
            FakeProbe(ctx, "a", quick, group="registry"),
            FakeProbe(ctx, "b", quick, group="filesystem"),
            FakeProbe(ctx, "c", quick, group="unknown"),
        ]
        delivered = []
        results = Orchestrator(ctx, probes, on_result=delivered.append).run()

        self.assertEqual([r.probe_id for r in results], ["a", "b", "c"])
        self.assertTrue(all(r.status == ProbeStatus.COMPLETED for r in results))
        self.assertEqual(sorted(r.probe_id for r in delivered), ["a", "b", "c"])

    def test_timeout_keeps_partial_findings(self):
        ctx = build_context(fast_config(process_timeout_s=0.3), FakeExecutor())
        slow = FakeProbe(ctx, "slow", stalls)
        probes = [FakeProbe(ctx, "fast", quick), slow]

        started = time.monotonic()
        fast, timed_out = Orchestrator(ctx, probes).run()
        elapsed = time.monotonic() - started

        self.assertLess(elapsed, 3.0)
        self.assertEqual(fast.status, ProbeStatus.COMPLETED)
        self.assertEqual(fast.findings, ("[Fake] quick",))

        self.assertEqual(timed_out.status, ProbeStatus.TIMED_OUT)
        self.assertFalse(timed_out.success)
        self.assertEqual(timed_out.error, "Timed out after 0.3s")
        self.assertEqual(timed_out.findings, ("[Fake] partial",))

        # The abandoned worker observes its token and stays TIMED_OUT
        self.assertTrue(wait_for(lambda: slow.run.cancelled))
        self.assertEqual(slow.status, ProbeStatus.TIMED_OUT)

    def test_stalled_group_does_not_block_others(self):
        ctx = build_context(fast_config(process_timeout_s=1.0), FakeExecutor())
        started = time.monotonic()
        delivered = {}

        def on_result(r):
            delivered[r.probe_id] = time.monotonic() - started

        probes = [
            FakeProbe(ctx, "stuck", stalls, group="process"),
            FakeProbe(ctx, "reg", quick, group="registry"),
            FakeProbe(ctx, "fs", quick, group="filesystem"),
        ]
        stuck, reg, fs = Orchestrator(ctx, probes, on_result=on_result).run()

        self.assertEqual(stuck.status, ProbeStatus.TIMED_OUT)
        self.assertEqual(reg.status, ProbeStatus.COMPLETED)
        self.assertEqual(fs.status, ProbeStatus.COMPLETED)
        self.assertLess(delivered["reg"], 0.8)
        self.assertLess(delivered["fs"], 0.8)
        self.assertGreaterEqual(delivered["stuck"], 1.0)

    def test_drain_waits_for_abandoned_workers(self):
        release = threading.Event()
        ctx = build_context(fast_config(process_timeout_s=0.1), FakeExecutor())
        orchestrator = Orchestrator(ctx, [FakeProbe(ctx, "blocked", lambda run: release.wait(5))])

        (result,) = orchestrator.run()
        self.assertEqual(result.status, ProbeStatus.TIMED_OUT)
        self.assertEqual(len(orchestrator.abandoned), 1)
        self.assertFalse(orchestrator.drain(0.05))

        release.set()
        self.assertTrue(orchestrator.drain(5))

    def test_failures_are_isolated(self):
        ctx = build_context(fast_config(), FakeExecutor())
        probes = [
            FakeProbe(ctx, "raises", boom),
            FakeProbe(ctx, "ok", quick),
            CrashingProbe(ctx, "crashes", quick),
        ]
        raises, ok, crashes = Orchestrator(ctx, probes).run()

        self.assertEqual(raises.status, ProbeStatus.ERRORED)
        self.assertEqual(raises.error, "boom")
        self.assertEqual(ok.status, ProbeStatus.COMPLETED)
        self.assertEqual(crashes.status, ProbeStatus.ERRORED)
        self.assertEqual(crashes.error, "crashed")

    def test_progress_events(self):
        ctx = build_context(fast_config(), FakeExecutor())
        events = []
        Orchestrator(ctx, [FakeProbe(ctx, "a", quick)], on_progress=events.append).run()

        self.assertEqual(events[0].percentage, 0)
        self.assertEqual(events[-1].percentage, 100)
        self.assertTrue(all(e.probe_name == "Fake a" for e in events))


class TestProgressGate(unittest.TestCase):

    def test_closed_gate_drops_events(self):
        seen = []
        gate = ProgressGate(seen.append)
        event = ScanProgress("p", 1, 2)
        gate.emit(event)
        gate.close()
        gate.emit(event)

        self.assertTrue(gate.closed)
        self.assertEqual(seen, [event])

    def test_sink_errors_are_swallowed(self):
        def broken(_):
            raise ValueError("ui went away")

        ProgressGate(broken).emit(ScanProgress("p", 0, 1))


class TestScanController(unittest.TestCase):

    def start_in_thread(self, controller, **kwargs):
        out = {}

        def target():
            out["results"] = controller.start(**kwargs)

        t = threading.Thread(target=target, daemon=True)
        t.start()
        return t, out

    def test_cancel_stops_everything(self):
        def factory(ctx, ids):
            return [FakeProbe(ctx, f"s{i}", stalls) for i in range(3)]

        controller = ScanController(fast_config(process_timeout_s=30.0, concurrency=1), FakeExecutor(), factory)
        events = []
        t, out = self.start_in_thread(controller, on_progress=events.append)

        self.assertTrue(wait_for(lambda: len(events) > 2))
        controller.cancel()
        delivered = len(events)

        t.join(5)
        self.assertFalse(t.is_alive())
        self.assertEqual(len(events), delivered)

        results = out["results"]
        self.assertEqual([r.probe_id for r in results], ["s0", "s1", "s2"])
        self.assertTrue(all(r.status == ProbeStatus.CANCELLED for r in results))
        self.assertEqual(results[0].findings, ("[Fake] partial",))
        self.assertEqual(results[2].findings, ())
        self.assertFalse(ScanController.is_running())

    def test_second_start_is_rejected(self):
        def factory(ctx, ids):
            return [FakeProbe(ctx, "s", stalls)]

        first = ScanController(fast_config(process_timeout_s=30.0), FakeExecutor(), factory)
        events = []
        t, _ = self.start_in_thread(first, on_progress=events.append)
        self.assertTrue(wait_for(lambda: events))

        second = ScanController(fast_config(), FakeExecutor(), factory)
        with self.assertRaises(ScanAlreadyRunning):
            second.start()

        first.cancel()
        t.join(5)
        self.assertFalse(ScanController.is_running())

    def test_guard_covers_leftover_work(self):
        finished = threading.Event()

        def uncancellable(run):
            time.sleep(0.5)
            finished.set()

        def factory(ctx, ids):
            return [FakeProbe(ctx, "stubborn", uncancellable)]

        results = ScanController(fast_config(process_timeout_s=0.1), FakeExecutor(), factory).start()

        self.assertEqual(results[0].status, ProbeStatus.TIMED_OUT)
        self.assertTrue(finished.is_set())
        self.assertFalse(ScanController.is_running())

    def test_cancel_when_idle_is_harmless(self):
        ScanController(fast_config(), FakeExecutor()).cancel()

    def test_describe_probes(self):
        probes = ScanController.describe_probes()
        self.assertEqual(len(probes), 14)
        self.assertEqual(set(probes[0]), {"id", "name", "description", "group"})
        self.assertEqual({p["group"] for p in probes}, set(GROUP_NAMES))


if __name__ == "__main__":
    unittest.main()
