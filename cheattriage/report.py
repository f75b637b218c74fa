"""
Report export: a plain-text report grouped by probe, a JSON mirror of the
result list and an optional upload of the JSON report to a webhook.
"""

import json
import platform
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import requests

from . import VERSION
from .log import log_error, log_success
from .models import ProbeStatus, ScanResult

WEBHOOK_TIMEOUT_S = 60


def summarize(results: list[ScanResult]) -> dict[str, Any]:
    return {
        "probes": len(results),
        "completed": sum(1 for r in results if r.status == ProbeStatus.COMPLETED),
        "failed": sum(1 for r in results if not r.success),
        "findings": sum(r.count for r in results),
    }


def to_json(results: list[ScanResult]) -> dict[str, Any]:
    return {
        "tool": f"cheat-triager {VERSION}",
        "host": platform.node(),
        "generated": datetime.now(timezone.utc).isoformat(),
        "summary": summarize(results),
        "results": [r.to_dict() for r in results],
    }


def write_json(path: Path, obj: Any) -> None:
    path.write_text(json.dumps(obj, indent=2, ensure_ascii=False), encoding="utf-8")


def render_text(results: list[ScanResult]) -> str:
    s = summarize(results)
    lines = [
        f"cheat-triager {VERSION} report",
        f"Host: {platform.node()}",
        f"Generated: {datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S')} UTC",
        f"Probes: {s['probes']}  Completed: {s['completed']}  Failed: {s['failed']}  Findings: {s['findings']}",
        "",
    ]

    for r in results:
        header = f"=== {r.name} [{r.status.value}] ({r.count} findings, {r.duration_ms}ms) ==="
        lines.append(header)
        if r.error:
            lines.append(f"Error: {r.error}")
        if r.findings:
            lines.extend(r.findings)
        elif r.success:
            lines.append("No findings.")
        lines.append("")

    return "\n".join(lines)


def write_text(path: Path, results: list[ScanResult]) -> None:
    path.write_text(render_text(results), encoding="utf-8")


def post_report(url: str, results: list[ScanResult]) -> bool:
    """POST the JSON report. Failures are logged, never raised."""
    headers = {"Content-Type": "application/json"}
    payload = to_json(results)
    try:
        body = json.dumps(payload, ensure_ascii=False).encode("utf-8")
        r = requests.post(url, headers=headers, data=body, timeout=WEBHOOK_TIMEOUT_S)
    except requests.RequestException as ex:
        log_error(f"Webhook upload failed: {ex}")
        return False

    if r.status_code >= 300:
        log_error(f"Webhook returned {r.status_code}: {r.text[:800]}")
        return False

    log_success(f"Report uploaded ({r.status_code})")
    return True
