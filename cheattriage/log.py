"""
Console logging for cheat-triager.

Every line goes through one lock so output from concurrent probes never
interleaves mid-line.
"""

import os
import sys
import threading
import traceback

PRINT_LOCK = threading.Lock()

VERBOSE = False


def _enable_windows_vt_mode() -> bool:
    """
    Enable ANSI escape processing on Windows terminals (cmd.exe/PowerShell).
    Returns True if enabled (or already enabled), False otherwise.
    """
    if os.name != "nt":
        return True

    try:
        import ctypes
        from ctypes import wintypes

        kernel32 = ctypes.windll.kernel32

        for handle_id in (-11, -12):
            h = kernel32.GetStdHandle(handle_id)
            if h in (None, 0, ctypes.c_void_p(-1).value):
                continue

            mode = wintypes.DWORD()
            if not kernel32.GetConsoleMode(h, ctypes.byref(mode)):
                continue

            # ENABLE_VIRTUAL_TERMINAL_PROCESSING = 0x0004
            if not kernel32.SetConsoleMode(h, mode.value | 0x0004):
                continue

        return True
    except Exception:
        return False


def _supports_color() -> bool:
    if os.environ.get("NO_COLOR") is not None:
        return False

    if not sys.stdout.isatty():
        return False

    if os.name == "nt":
        return _enable_windows_vt_mode()

    return True


class C:
    RESET  = "\033[0m"
    INFO   = "\033[94m"  # blue
    SUCCESS= "\033[92m"  # green
    WARN   = "\033[93m"  # yellow
    ERROR  = "\033[91m"  # red
    STEP   = "\033[96m"  # cyan
    HEADER = "\033[95m"  # magenta
    DIM    = "\033[90m"  # gray


USE_COLOR = _supports_color()


def configure(*, verbose: bool | None = None, color: bool | None = None) -> None:
    global VERBOSE, USE_COLOR
    if verbose is not None:
        VERBOSE = verbose
    if color is not None:
        USE_COLOR = color and _supports_color()


def _c(color: str, text: str) -> str:
    if not USE_COLOR:
        return text
    return f"{color}{text}{C.RESET}"


def log_info(msg: str):
    with PRINT_LOCK:
        print(_c(C.INFO, f"[INFO] {msg}"))


def log_step(msg: str):
    with PRINT_LOCK:
        print(_c(C.STEP, f"[+] {msg}"))


def log_success(msg: str):
    with PRINT_LOCK:
        print(_c(C.SUCCESS, f"[OK] {msg}"))


def log_warn(msg: str):
    with PRINT_LOCK:
        print(_c(C.WARN, f"[!] {msg}"), file=sys.stderr)


def log_error(msg: str):
    with PRINT_LOCK:
        print(_c(C.ERROR, f"[ERROR] {msg}"), file=sys.stderr)


def log_header(msg: str):
    with PRINT_LOCK:
        print(_c(C.HEADER, f"\n=== {msg} ==="))


def log_dim(msg: str):
    with PRINT_LOCK:
        print(_c(C.DIM, msg))


def log_debug(msg: str):
    if not VERBOSE:
        return
    with PRINT_LOCK:
        print(_c(C.DIM, f"[DEBUG] {msg}"), file=sys.stderr)


# Uncaught errors
def _format_exc(exc_type, exc, tb) -> str:
    return "".join(traceback.format_exception(exc_type, exc, tb)).rstrip()


def install_exception_hooks() -> None:
    """
    Log uncaught exceptions from the main thread and from worker threads
    instead of letting them tear down a scan in progress.
    """
    def _main_hook(exc_type, exc, tb):
        if issubclass(exc_type, KeyboardInterrupt):
            sys.__excepthook__(exc_type, exc, tb)
            return
        log_error(f"Uncaught exception: {exc}")
        log_debug(_format_exc(exc_type, exc, tb))

    def _thread_hook(args: threading.ExceptHookArgs):
        if args.exc_type is SystemExit:
            return
        name = args.thread.name if args.thread else "?"
        log_error(f"Uncaught exception in thread {name}: {args.exc_value}")
        log_debug(_format_exc(args.exc_type, args.exc_value, args.exc_traceback))

    sys.excepthook = _main_hook
    threading.excepthook = _thread_hook
