"""Error taxonomy shared by the executor, the decoders and the probes."""

from enum import Enum


class TriageError(Exception):
    pass


class Cancelled(TriageError):
    def __init__(self, message: str = "Scan cancelled"):
        super().__init__(message)


class ProbeTimeout(TriageError):
    def __init__(self, seconds: float):
        super().__init__(f"Timed out after {seconds:g}s")
        self.seconds = seconds


class ExecutionKind(str, Enum):
    TIMEOUT = "timeout"
    NONZERO_EXIT = "nonzero-exit"
    BUFFER_EXCEEDED = "buffer-exceeded"
    MISSING = "missing"
    ACCESS_DENIED = "access-denied"


class ExecutionError(TriageError):
    """
    An external command failed. `output` holds whatever stdout was captured
    before the failure, so callers can still use partial output.
    """

    def __init__(self, kind: ExecutionKind, command: str, detail: str = "", output: str = ""):
        short = command if len(command) <= 100 else command[:100] + "..."
        msg = f"{kind.value}: {short}"
        if detail:
            msg += f" ({detail})"
        super().__init__(msg)
        self.kind = kind
        self.command = command
        self.output = output


class ParseFailure(TriageError):
    pass


class ConfigurationInvalid(TriageError):
    pass


class ScanAlreadyRunning(TriageError):
    def __init__(self):
        super().__init__("Scan already in progress")
