"""
Bounded execution of external OS commands.

All probes share one ProcessExecutor per run. Its semaphore caps how many
child processes are alive at once, whichever probe asked for them.
"""

import base64
import errno
import locale
import os
import shutil
import subprocess
import threading
import time
from pathlib import Path
from typing import Any, Callable

import psutil

from .errors import Cancelled, ExecutionError, ExecutionKind
from .log import log_debug

STDERR_LIMIT = 10_000

# cmd.exe reports "is not recognized" with 9009, POSIX shells with 127.
_NOT_FOUND_CODES = (9009, 127)

# ERROR_SHARING_VIOLATION, ERROR_LOCK_VIOLATION
_SHARING_VIOLATION_WINERRORS = (32, 33)

COPY_BACKOFF_S = (0.1, 0.2, 0.4)


def _oem_encoding() -> str | None:
    if os.name != "nt":
        return None
    try:
        import ctypes
        return f"cp{ctypes.windll.kernel32.GetOEMCP()}"
    except Exception:
        return None


def decode_output(raw: bytes) -> str:
    """
    Console tools print in UTF-8, the OEM code page or the ANSI code page
    depending on the tool and the locale. Try them in that order.
    """
    for enc in ("utf-8", _oem_encoding(), locale.getpreferredencoding(False)):
        if not enc:
            continue
        try:
            return raw.decode(enc)
        except (UnicodeDecodeError, LookupError):
            continue
    return raw.decode("latin-1", errors="replace")


def kill_process_tree(pid: int) -> None:
    try:
        parent = psutil.Process(pid)
    except psutil.NoSuchProcess:
        return

    try:
        procs = parent.children(recursive=True)
    except psutil.Error:
        procs = []
    procs.append(parent)

    for p in procs:
        try:
            p.kill()
        except psutil.Error:
            pass
    psutil.wait_procs(procs, timeout=2)


class _Collector(threading.Thread):
    """
    Drains a pipe into memory, keeping at most `limit` bytes. A strict
    collector stops at the cap and flags overflow so the caller can kill the
    child; otherwise the rest is read and discarded so the child never
    blocks on a full pipe.
    """

    def __init__(self, stream, limit: int, strict: bool = True):
        super().__init__(daemon=True)
        self._stream = stream
        self._limit = limit
        self._strict = strict
        self.data = bytearray()
        self.overflow = threading.Event()

    def run(self):
        try:
            while True:
                chunk = self._stream.read1(65536) if hasattr(self._stream, "read1") else self._stream.read(65536)
                if not chunk:
                    break
                room = self._limit - len(self.data)
                if room > 0:
                    self.data += chunk[:room]
                if len(chunk) > room and self._strict:
                    self.overflow.set()
                    break
        except (OSError, ValueError):
            pass


class ProcessExecutor:
    def __init__(
        self,
        max_concurrent: int = 15,
        default_timeout_ms: int = 30_000,
        max_output_bytes: int = 10 * 1024 * 1024,
        poll_interval_s: float = 0.25,
    ):
        self.max_concurrent = max_concurrent
        self.default_timeout_ms = default_timeout_ms
        self.max_output_bytes = max_output_bytes
        self.poll_interval_s = poll_interval_s
        self._slots = threading.BoundedSemaphore(max_concurrent)
        self._lock = threading.Lock()
        self._running = 0

    @property
    def running(self) -> int:
        with self._lock:
            return self._running

    def run(
        self,
        command: str,
        *,
        timeout_ms: int | None = None,
        max_output_bytes: int | None = None,
        allow_partial: bool = True,
        token: Any = None,
    ) -> str:
        """
        Run `command` through the platform shell and return its stdout.

        With `allow_partial`, a non-zero exit that still produced output is
        returned as success; `reg query /s` exits 1 on a single
        access-denied subkey while printing everything else.
        """
        self._acquire(token)
        with self._lock:
            self._running += 1
        try:
            return self._execute(
                command,
                timeout_ms or self.default_timeout_ms,
                max_output_bytes or self.max_output_bytes,
                allow_partial,
                token,
            )
        finally:
            with self._lock:
                self._running -= 1
            self._slots.release()

    def _acquire(self, token: Any) -> None:
        while not self._slots.acquire(timeout=self.poll_interval_s):
            if token is not None and token.cancelled:
                raise Cancelled()

    def _execute(self, command: str, timeout_ms: int, limit: int, allow_partial: bool, token: Any) -> str:
        if token is not None and token.cancelled:
            raise Cancelled()

        kwargs: dict[str, Any] = {}
        if os.name == "nt":
            kwargs["creationflags"] = subprocess.CREATE_NO_WINDOW

        try:
            proc = subprocess.Popen(
                command,
                shell=True,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                **kwargs,
            )
        except FileNotFoundError as ex:
            raise ExecutionError(ExecutionKind.MISSING, command, str(ex)) from ex
        except PermissionError as ex:
            raise ExecutionError(ExecutionKind.ACCESS_DENIED, command, str(ex)) from ex

        out = _Collector(proc.stdout, limit)
        err = _Collector(proc.stderr, STDERR_LIMIT, strict=False)
        out.start()
        err.start()

        deadline = time.monotonic() + timeout_ms / 1000
        failure: BaseException | None = None

        while True:
            now = time.monotonic()
            try:
                proc.wait(timeout=max(0.01, min(self.poll_interval_s, deadline - now)))
                break
            except subprocess.TimeoutExpired:
                pass

            if out.overflow.is_set():
                failure = ExecutionError(
                    ExecutionKind.BUFFER_EXCEEDED, command, f"more than {limit} bytes of output"
                )
            elif token is not None and token.cancelled:
                failure = Cancelled()
            elif time.monotonic() >= deadline:
                failure = ExecutionError(ExecutionKind.TIMEOUT, command, f"after {timeout_ms}ms")

            if failure is not None:
                log_debug(f"Killing pid {proc.pid}: {failure}")
                kill_process_tree(proc.pid)
                break

        out.join(timeout=2)
        err.join(timeout=2)
        for stream in (proc.stdout, proc.stderr):
            try:
                stream.close()
            except OSError:
                pass

        stdout = decode_output(bytes(out.data))

        if failure is None and out.overflow.is_set():
            failure = ExecutionError(
                ExecutionKind.BUFFER_EXCEEDED, command, f"more than {limit} bytes of output"
            )

        if failure is not None:
            if isinstance(failure, ExecutionError):
                failure.output = stdout
            raise failure

        code = proc.returncode
        if code != 0:
            if allow_partial and stdout.strip():
                return stdout
            stderr = decode_output(bytes(err.data)).strip()
            kind = ExecutionKind.MISSING if code in _NOT_FOUND_CODES else ExecutionKind.NONZERO_EXIT
            if "access is denied" in stderr.lower():
                kind = ExecutionKind.ACCESS_DENIED
            detail = f"exit code {code}"
            if stderr:
                detail += f": {stderr[:200]}"
            raise ExecutionError(kind, command, detail, output=stdout)

        return stdout

    def run_powershell(
        self,
        script: str,
        *,
        timeout_ms: int | None = None,
        max_output_bytes: int | None = None,
        token: Any = None,
    ) -> str:
        """
        Run a PowerShell script passed as -EncodedCommand (UTF-16LE base64),
        which sidesteps every cmd.exe quoting rule. Output is forced to UTF-8.
        """
        prelude = (
            "[Console]::OutputEncoding = [System.Text.Encoding]::UTF8\n"
            "$ErrorActionPreference = 'SilentlyContinue'\n"
        )
        encoded = base64.b64encode((prelude + script).encode("utf-16-le")).decode("ascii")
        return self.run(
            f"powershell -NoProfile -NonInteractive -ExecutionPolicy Bypass -EncodedCommand {encoded}",
            timeout_ms=timeout_ms,
            max_output_bytes=max_output_bytes,
            token=token,
        )


# Locked file snapshots
def is_sharing_violation(ex: OSError) -> bool:
    if getattr(ex, "winerror", None) in _SHARING_VIOLATION_WINERRORS:
        return True
    return ex.errno == errno.EBUSY


def copy_locked_file(
    src: Path,
    dst: Path,
    *,
    token: Any = None,
    sleep: Callable[[float], None] = time.sleep,
) -> Path:
    """
    Copy a file another process may hold open (browser databases). Only
    sharing violations are retried, with 100/200/400 ms backoff.
    """
    for attempt in range(len(COPY_BACKOFF_S) + 1):
        if token is not None and token.cancelled:
            raise Cancelled()
        try:
            shutil.copyfile(src, dst)
            return dst
        except OSError as ex:
            if not is_sharing_violation(ex) or attempt == len(COPY_BACKOFF_S):
                raise
            delay = COPY_BACKOFF_S[attempt]
            log_debug(f"{src} is locked, retrying in {int(delay * 1000)}ms")
            sleep(delay)
    return dst
