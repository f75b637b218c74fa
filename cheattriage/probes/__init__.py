"""
Probe registry. Importing this package registers every probe class in
`PROBE_TYPES` in catalogue order.
"""

from ..context import ScanContext
from ..log import log_warn
from . import filesystem, steam, registry, execution, process, browser, network, tasks, vm  # noqa: F401
from .base import PROBE_TYPES, Probe, ProbeBase, ProbeRun, probe

__all__ = ["PROBE_TYPES", "Probe", "ProbeBase", "ProbeRun", "probe", "build_probes", "probe_ids"]


def probe_ids() -> list[str]:
    return list(PROBE_TYPES)


def build_probes(ctx: ScanContext, ids: list[str] | None = None) -> list[Probe]:
    """
    Instantiate the requested probes (all of them when `ids` is empty).
    Unknown ids are reported and skipped.
    """
    if not ids:
        ids = probe_ids()

    probes: list[Probe] = []
    for probe_id in dict.fromkeys(ids):
        cls = PROBE_TYPES.get(probe_id)
        if cls is None:
            log_warn(f"Unknown probe: {probe_id}")
            continue
        probes.append(cls(ctx))
    return probes
