"""Shared fixtures: a scripted executor and context builders."""

import dataclasses

from cheattriage.config import build_config
from cheattriage.context import build_context
from cheattriage.errors import ExecutionError, ExecutionKind


class FakeExecutor:
    """
    Returns canned output for the first scripted substring found in a
    command. Unscripted commands fail like a missing tool. A scripted value
    may also be an exception instance, which is raised.
    """

    def __init__(self, outputs: dict | None = None):
        self.outputs = dict(outputs or {})
        self.commands: list[str] = []

    def run(self, command, *, timeout_ms=None, max_output_bytes=None, allow_partial=True, token=None):
        self.commands.append(command)
        if token is not None:
            token.raise_if_cancelled()
        for needle, out in self.outputs.items():
            if needle in command:
                if isinstance(out, BaseException):
                    raise out
                return out
        raise ExecutionError(ExecutionKind.MISSING, command, "not scripted")

    def run_powershell(self, script, *, timeout_ms=None, max_output_bytes=None, token=None):
        return self.run(f"powershell {script}", token=token)

    def count(self, needle: str) -> int:
        return sum(1 for c in self.commands if needle in c)


def make_config(**overrides):
    cfg = build_config({})
    return dataclasses.replace(cfg, **overrides) if overrides else cfg


def make_context(executor=None, **overrides):
    return build_context(make_config(**overrides), executor or FakeExecutor())
