import argparse
import threading
from pathlib import Path

from . import VERSION
from .config import load_config
from .log import (
    configure,
    install_exception_hooks,
    log_debug,
    log_dim,
    log_error,
    log_header,
    log_info,
    log_success,
    log_warn,
)
from .models import ScanProgress, ScanResult
from .orchestrator import ScanController
from .report import post_report, to_json, write_json, write_text

EXIT_CLEAN = 0
EXIT_FINDINGS = 1
EXIT_USAGE = 2


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    ap = argparse.ArgumentParser(
        prog="cheat-triager",
        description="Live Windows triage for game-cheat artifacts",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    ap.add_argument("-V", "--version", action="version", version=f"cheat-triager {VERSION}")
    ap.add_argument("--list-probes", action="store_true", help="List available probes and exit")
    ap.add_argument(
        "-p",
        "--probes",
        help="Comma-separated probe ids to run (default: all). See --list-probes.",
    )
    ap.add_argument("-c", "--config", help="Path to config.yml (default: bundled or ./config.yml)")
    ap.add_argument("-o", "--output", help="Write the text report to this file")
    ap.add_argument("--json", help="Write the JSON report to this file")
    ap.add_argument("--webhook", help="POST the JSON report to this URL (overrides report.webhook_url)")
    ap.add_argument("--no-color", action="store_true", help="Disable colored output")
    ap.add_argument("-v", "--verbose", action="store_true", help="Show debug output")

    return ap.parse_args(argv)


def selected_probes(raw: str | None) -> list[str] | None:
    if not raw:
        return None
    return [p.strip() for p in raw.split(",") if p.strip()]


def print_probes() -> None:
    log_header("Available probes")
    for d in ScanController.describe_probes():
        print(f"  {d['id']:<16} {d['group']:<11} {d['name']} - {d['description']}")


def print_results(results: list[ScanResult]) -> None:
    for r in results:
        if not r.findings and r.success:
            continue
        log_header(f"{r.name} ({r.count})")
        if r.error:
            log_warn(r.error)
        for finding in r.findings:
            print(finding)


def run_scan(controller: ScanController, probe_ids: list[str] | None) -> list[ScanResult]:
    """
    Run the scan on a worker thread so the main thread stays responsive to
    Ctrl+C, which cancels the run instead of killing the process.
    """
    results: list[ScanResult] = []
    failure: list[BaseException] = []

    def on_progress(p: ScanProgress) -> None:
        log_debug(f"{p.probe_name}: {p.percentage:5.1f}% {p.current_path}")

    def worker() -> None:
        try:
            results.extend(controller.start(probe_ids, on_progress=on_progress))
        except Exception as ex:
            failure.append(ex)

    t = threading.Thread(target=worker, name="scan", daemon=True)
    t.start()
    while t.is_alive():
        try:
            t.join(timeout=0.2)
        except KeyboardInterrupt:
            log_warn("Interrupted, cancelling scan...")
            controller.cancel()

    if failure:
        raise failure[0]
    return results


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    configure(verbose=args.verbose, color=not args.no_color)
    install_exception_hooks()

    if args.list_probes:
        print_probes()
        return EXIT_CLEAN

    probe_ids = selected_probes(args.probes)
    if probe_ids:
        known = {d["id"] for d in ScanController.describe_probes()}
        unknown = [p for p in probe_ids if p not in known]
        if unknown:
            log_error(f"Unknown probe id(s): {', '.join(unknown)}")
            return EXIT_USAGE

    cfg_path = None
    if args.config:
        cfg_path = Path(args.config).expanduser().resolve()
        if not cfg_path.exists():
            log_error(f"Config file not found: {cfg_path}")
            return EXIT_USAGE

    config = load_config(cfg_path)
    controller = ScanController(config)

    log_info(f"cheat-triager {VERSION}")
    results = run_scan(controller, probe_ids)
    print_results(results)

    total = sum(r.count for r in results)
    failed = [r for r in results if not r.success]
    if failed:
        log_warn(f"{len(failed)} probe(s) did not complete: {', '.join(r.probe_id for r in failed)}")
    if total:
        log_warn(f"Total findings: {total}")
    else:
        log_success("No findings")

    if args.output:
        out = Path(args.output).expanduser().resolve()
        write_text(out, results)
        log_dim(f"Text report -> {out}")
    if args.json:
        out = Path(args.json).expanduser().resolve()
        write_json(out, to_json(results))
        log_dim(f"JSON report -> {out}")

    webhook = args.webhook or config.webhook_url
    if webhook:
        post_report(webhook, results)

    return EXIT_FINDINGS if total else EXIT_CLEAN
