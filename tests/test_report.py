import json
import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest import mock

import requests

from cheattriage import cli
from cheattriage.models import ProbeStatus, ScanResult
from cheattriage.orchestrator import ScanController
from cheattriage.report import post_report, render_text, summarize, to_json, write_json

T0 = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


def result(probe_id, status=ProbeStatus.COMPLETED, findings=(), error=None):
    return ScanResult(
        probe_id=probe_id,
        name=f"{probe_id.title()} Scanner",
        success=error is None,
        status=status,
        findings=tuple(findings),
        start_time=T0,
        end_time=T0 + timedelta(milliseconds=250),
        error=error,
    )


RESULTS = [
    result("process", findings=["[Process] {aimbot} aimbot.exe (PID: 7)"]),
    result("dnscache"),
    result("vm", ProbeStatus.TIMED_OUT, ["[VM DETECTED] VMware - 2 indicators found:"], "Timed out after 45s"),
]


class TestReport(unittest.TestCase):

    def test_summary(self):
        self.assertEqual(summarize(RESULTS), {"probes": 3, "completed": 2, "failed": 1, "findings": 2})

    def test_text_report(self):
        text = render_text(RESULTS)

        self.assertIn("=== Process Scanner [completed] (1 findings, 250ms) ===\n[Process] {aimbot} aimbot.exe (PID: 7)", text)
        self.assertIn("=== Dnscache Scanner [completed] (0 findings, 250ms) ===\nNo findings.", text)
        self.assertIn("=== Vm Scanner [timed_out] (1 findings, 250ms) ===\nError: Timed out after 45s\n", text)

    def test_json_report(self):
        doc = to_json(RESULTS)
        self.assertEqual(doc["summary"]["findings"], 2)
        self.assertEqual(doc["results"][2]["status"], "timed_out")
        self.assertEqual(doc["results"][0]["duration_ms"], 250)
        self.assertEqual(doc["results"][0]["start_time"], "2024-01-01T12:00:00+00:00")

        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp, "report.json")
            write_json(path, doc)
            self.assertEqual(json.loads(path.read_text(encoding="utf-8"))["results"][1]["probe"], "dnscache")


class TestWebhook(unittest.TestCase):

    @mock.patch("cheattriage.report.requests.post")
    def test_upload(self, post):
        post.return_value = mock.Mock(status_code=204, text="")
        self.assertTrue(post_report("https://example.invalid/hook", RESULTS))

        _, kwargs = post.call_args
        self.assertEqual(kwargs["headers"]["Content-Type"], "application/json")
        self.assertEqual(json.loads(kwargs["data"].decode("utf-8"))["summary"]["probes"], 3)

    @mock.patch("cheattriage.report.requests.post")
    def test_rejected(self, post):
        post.return_value = mock.Mock(status_code=500, text="nope")
        self.assertFalse(post_report("https://example.invalid/hook", RESULTS))

    @mock.patch("cheattriage.report.requests.post", side_effect=requests.ConnectionError("refused"))
    def test_unreachable(self, post):
        self.assertFalse(post_report("https://example.invalid/hook", RESULTS))


class TestCli(unittest.TestCase):

    def setUp(self):
        hooks = mock.patch("cheattriage.cli.install_exception_hooks")
        hooks.start()
        self.addCleanup(hooks.stop)

    def test_selected_probes(self):
        self.assertIsNone(cli.selected_probes(None))
        self.assertEqual(cli.selected_probes(" vm, ,dnscache "), ["vm", "dnscache"])

    def test_list_probes(self):
        self.assertEqual(cli.main(["--list-probes", "--no-color"]), cli.EXIT_CLEAN)

    def test_unknown_probe(self):
        self.assertEqual(cli.main(["-p", "nope", "--no-color"]), cli.EXIT_USAGE)

    def test_missing_config(self):
        self.assertEqual(cli.main(["-c", "/nonexistent/config.yml", "--no-color"]), cli.EXIT_USAGE)

    def test_scan_writes_reports(self):
        with tempfile.TemporaryDirectory() as tmp, \
                mock.patch.object(ScanController, "start", return_value=RESULTS) as start:
            text_out = Path(tmp, "report.txt")
            json_out = Path(tmp, "report.json")
            code = cli.main(["-p", "process,vm", "-o", str(text_out), "--json", str(json_out), "--no-color"])

            self.assertEqual(code, cli.EXIT_FINDINGS)
            self.assertEqual(start.call_args[0][0], ["process", "vm"])
            self.assertIn("Process Scanner", text_out.read_text(encoding="utf-8"))
            self.assertEqual(json.loads(json_out.read_text(encoding="utf-8"))["summary"]["probes"], 3)

    def test_clean_scan(self):
        with mock.patch.object(ScanController, "start", return_value=[result("dnscache")]):
            self.assertEqual(cli.main(["-p", "dnscache", "--no-color"]), cli.EXIT_CLEAN)


if __name__ == "__main__":
    unittest.main()
