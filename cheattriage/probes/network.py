from ..decoders.text import parse_dns_cache
from .base import ProbeBase, probe

DNS_TIMEOUT_MS = 15_000


@probe(
    "dnscache",
    "DNS Cache Scanner",
    "Scanning Windows DNS cache for suspicious domain resolutions",
    "process",
)
class DnsCacheProbe(ProbeBase):
    def collect(self) -> None:
        self.run.progress(1, 3, "Reading DNS cache...", 10)
        out = self.run_cmd("ipconfig /displaydns", timeout_ms=DNS_TIMEOUT_MS)

        self.run.progress(2, 3, "Parsing DNS entries...", 40)
        entries = parse_dns_cache(out)

        self.run.progress(3, 3, "Checking keywords...", 70)
        matcher = self.ctx.matcher
        seen: set[str] = set()
        for entry in entries:
            self.run.check()
            domain = entry.name.lower()
            if domain in seen:
                continue
            seen.add(domain)

            if not matcher.contains_keyword(entry.name):
                continue

            line = f"[DNS Cache] {matcher.tag(entry.name)}{entry.name}"
            if entry.record_type:
                line += f" ({entry.record_type})"
            if entry.ttl > 0:
                line += f" | TTL: {entry.ttl}s"
            self.run.add(line)
