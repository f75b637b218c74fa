"""
Per-run state shared by every probe.

A ScanContext is built once when a scan starts and handed to each probe
constructor. Everything in it is read-only during the run except the
cancellation token and the process semaphore inside the executor.
"""

import threading
from dataclasses import dataclass

from .errors import Cancelled
from .executor import ProcessExecutor
from .keywords import KeywordMatcher
from .models import AppConfig, ScanSettings


class CancelToken:
    """
    Cooperative cancellation flag. A child token reports cancelled when
    either it or any of its ancestors was cancelled, so a deadline can stop a
    single probe while the run-wide token stops all of them.
    """

    def __init__(self, parent: "CancelToken | None" = None):
        self._event = threading.Event()
        self._parent = parent
        self.reason = ""

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self._parent is not None and self._parent.cancelled

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise Cancelled()

    def wait(self, timeout: float) -> bool:
        """Sleep up to `timeout` seconds; returns True early if cancelled."""
        if self._parent is None:
            return self._event.wait(timeout)
        # Parents are polled in small slices; child tokens are short-lived.
        step = min(timeout, 0.05)
        remaining = timeout
        while remaining > 0:
            if self.cancelled:
                return True
            self._event.wait(step)
            remaining -= step
        return self.cancelled

    def child(self) -> "CancelToken":
        return CancelToken(parent=self)


@dataclass
class ScanContext:
    config: AppConfig
    matcher: KeywordMatcher
    executor: ProcessExecutor
    cancel: CancelToken

    @property
    def settings(self) -> ScanSettings:
        return self.config.scanning


def build_context(config: AppConfig, executor: ProcessExecutor | None = None) -> ScanContext:
    token = CancelToken()
    if executor is None:
        executor = ProcessExecutor(
            max_concurrent=config.orchestration.process_limit,
            default_timeout_ms=config.timeouts.default_process_ms,
            max_output_bytes=config.timeouts.max_output_bytes,
            poll_interval_s=config.orchestration.poll_interval_s,
        )
    return ScanContext(
        config=config,
        matcher=KeywordMatcher(config.keywords),
        executor=executor,
        cancel=token,
    )
