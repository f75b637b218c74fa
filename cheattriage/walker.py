"""
Shared recursive filesystem walker.

Only names are matched, never file contents. Symbolic links and junctions are
never followed, so directory cycles cannot occur.
"""

import os
import stat
from typing import Any, Callable

from .keywords import KeywordMatcher
from .log import log_debug

HIDDEN_SUFFIX = " [HIDDEN]"

_FILE_ATTRIBUTE_HIDDEN = getattr(stat, "FILE_ATTRIBUTE_HIDDEN", 0x2)
_FILE_ATTRIBUTE_REPARSE_POINT = getattr(stat, "FILE_ATTRIBUTE_REPARSE_POINT", 0x400)


def _attributes(entry: os.DirEntry) -> int:
    try:
        return getattr(entry.stat(follow_symlinks=False), "st_file_attributes", 0)
    except OSError:
        return 0


def is_hidden(entry: os.DirEntry) -> bool:
    if entry.name.startswith("."):
        return True
    return bool(_attributes(entry) & _FILE_ATTRIBUTE_HIDDEN)


def _is_link(entry: os.DirEntry) -> bool:
    if entry.is_symlink():
        return True
    return bool(_attributes(entry) & _FILE_ATTRIBUTE_REPARSE_POINT)


def has_extension(name: str, extensions: tuple[str, ...] | list[str]) -> bool:
    dot = name.rfind(".")
    return dot > 0 and name[dot:].lower() in extensions


def walk_tree(
    root: str | os.PathLike,
    max_depth: int,
    extensions: tuple[str, ...] | list[str],
    excluded: frozenset[str] | set[str],
    matcher: KeywordMatcher,
    token: Any = None,
    on_match: Callable[[str], None] | None = None,
) -> list[str]:
    """
    Walk `root` and return every directory or file whose name matches a
    keyword. Depth 0 inspects only the entries of `root` itself. Files must
    also carry one of `extensions` (an empty list accepts any file). Names in
    `excluded` (lower-cased) are neither reported nor descended into.
    Unreadable directories are skipped. Raises Cancelled when `token` fires.
    """
    found: list[str] = []
    if not os.path.isdir(root):
        return found

    def report(path: str, hidden: bool):
        line = path + (HIDDEN_SUFFIX if hidden else "")
        found.append(line)
        if on_match is not None:
            on_match(line)

    def visit(path: str, depth: int):
        try:
            with os.scandir(path) as it:
                entries = sorted(it, key=lambda e: e.name.lower())
        except OSError as ex:
            log_debug(f"Cannot read folder {path}: {ex.strerror or ex}")
            return

        for entry in entries:
            if token is not None:
                token.raise_if_cancelled()

            try:
                if _is_link(entry):
                    continue

                if entry.is_dir(follow_symlinks=False):
                    if entry.name.lower() in excluded:
                        continue
                    if matcher.contains_keyword(entry.name):
                        report(entry.path, is_hidden(entry))
                    if depth < max_depth:
                        visit(entry.path, depth + 1)

                elif entry.is_file(follow_symlinks=False):
                    if not matcher.contains_keyword(entry.name):
                        continue
                    if extensions and not has_extension(entry.name, extensions):
                        continue
                    report(entry.path, is_hidden(entry))
            except OSError as ex:
                log_debug(f"Skipped {entry.path}: {ex.strerror or ex}")

    visit(os.fspath(root), 0)
    return found
