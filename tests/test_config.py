import tempfile
import unittest
from pathlib import Path

from cheattriage.config import DEFAULT_KEYWORDS, DEFAULT_REGISTRY_KEYS, build_config, load_config
from cheattriage.models import AppConfig

CONFIG = """
keywords:
  patterns: [loader, spoofer]
  exact_match: [MyCheat]
scanning:
  appdata_scan_depth: 5
  executable_extensions: [EXE, ".dll"]
  excluded_directories: [Node_Modules]
paths:
  steam:
    additional_drives: ["d:"]
    extra_roots: ['/srv/steam']
orchestration:
  poll_interval_ms: 50
  drain_timeout_ms: 1500
  groups:
    process: {concurrency: 1, timeout_s: 5}
report:
  webhook_url: https://example.invalid/hook
"""


class TestConfig(unittest.TestCase):

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.dir = Path(self._tmp.name)

    def tearDown(self):
        self._tmp.cleanup()

    def write(self, text: str) -> Path:
        p = self.dir / "config.yml"
        p.write_text(text, encoding="utf-8")
        return p

    def test_defaults(self):
        cfg = build_config({})
        self.assertEqual(cfg.keywords, DEFAULT_KEYWORDS)
        self.assertEqual(cfg.registry_keys, DEFAULT_REGISTRY_KEYS)
        self.assertEqual(cfg.orchestration.groups["filesystem"].concurrency, 5)
        self.assertEqual(cfg.orchestration.groups["process"].timeout_s, 45.0)
        self.assertEqual(cfg.orchestration.drain_timeout_s, 5.0)

    def test_full_file(self):
        cfg = load_config(self.write(CONFIG))
        self.assertEqual(cfg.keywords.patterns, ("loader", "spoofer"))
        self.assertEqual(cfg.keywords.exact_match, frozenset({"mycheat"}))
        self.assertEqual(cfg.scanning.appdata_scan_depth, 5)
        self.assertEqual(cfg.scanning.executable_extensions, (".exe", ".dll"))
        self.assertEqual(cfg.scanning.excluded_directories, frozenset({"node_modules"}))
        self.assertEqual(cfg.steam.additional_drives, ("D:",))
        self.assertEqual(cfg.steam.extra_roots, ("/srv/steam",))
        self.assertAlmostEqual(cfg.orchestration.poll_interval_s, 0.05)
        self.assertAlmostEqual(cfg.orchestration.drain_timeout_s, 1.5)
        self.assertEqual(cfg.orchestration.groups["process"].concurrency, 1)
        self.assertEqual(cfg.orchestration.groups["registry"].concurrency, 4)
        self.assertEqual(cfg.webhook_url, "https://example.invalid/hook")

    def test_invalid_section_falls_back(self):
        cfg = load_config(self.write("scanning:\n  appdata_scan_depth: deep\nkeywords:\n  patterns: [x]\n"))
        self.assertEqual(cfg.scanning, AppConfig().scanning)
        self.assertEqual(cfg.keywords.patterns, ("x",))

    def test_unknown_group_is_invalid(self):
        cfg = load_config(self.write("orchestration:\n  groups:\n    gpu: {concurrency: 1, timeout_s: 1}\n"))
        self.assertEqual(cfg.orchestration, AppConfig().orchestration)

    def test_broken_yaml_means_defaults(self):
        cfg = load_config(self.write("keywords: [unclosed\n"))
        self.assertEqual(cfg.keywords, DEFAULT_KEYWORDS)

    def test_missing_file_means_defaults(self):
        cfg = load_config(self.dir / "absent.yml")
        self.assertEqual(cfg.keywords, DEFAULT_KEYWORDS)


if __name__ == "__main__":
    unittest.main()
