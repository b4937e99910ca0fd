"""Apply a patch plan atomically through a FileAccess backend.

Two phases:
1. Stage: every operation is validated and applied, in order, to an
   in-memory overlay that reads through to the backend. A failure here
   raises before anything is written.
2. Commit: staged results are written to the backend. Each write or
   removal first records what it replaces; if one fails, the recorded
   entries are replayed in reverse to put every touched file back.

Either way the caller gets one PatchApplyError naming the path and reason,
and the backend looks as if the patch had never been attempted.

Context hunks are located exact-first, then ignoring trailing whitespace,
then ignoring surrounding whitespace. Search/replace edits are exact only.
"""

import difflib
import ntpath
import os
import posixpath

from core.audit_log import get_audit_log
from core.file_access import FileAccess
from core.patch_ops import (
    CreateFile,
    DeleteFile,
    EditOperation,
    Hunk,
    PatchApplyError,
    PatchOperation,
    PatchSummary,
    UpdateFile,
)


# ============================================================
# Path checks
# ============================================================

def check_relative_path(path: str) -> str:
    """Reject absolute paths and paths that climb out of the working directory.

    Returns the canonical form ("./a.txt" and "sub/../a.txt" both become
    "a.txt") so that one file is never staged under two names.
    """
    if not path or not path.strip():
        raise PatchApplyError(path, "Empty path")
    if posixpath.isabs(path) or ntpath.isabs(path) or ntpath.splitdrive(path)[0]:
        raise PatchApplyError(path, "Absolute paths are not allowed; use a path relative to the working directory")
    normalized = posixpath.normpath(path.replace("\\", "/"))
    if normalized == ".." or normalized.startswith("../"):
        raise PatchApplyError(path, "Path escapes the working directory")
    if normalized == ".":
        raise PatchApplyError(path, "Path names the working directory, not a file")
    return normalized


# ============================================================
# Hunk matching
# ============================================================

_MATCH_MODES = (
    lambda s: s,
    str.rstrip,
    str.strip,
)


def _matches_at(haystack: list[str], needle: list[str], pos: int) -> bool:
    return haystack[pos:pos + len(needle)] == needle


def find_block(lines: list[str], block: list[str], start: int, eof: bool = False) -> int:
    """Index of the first match of block in lines at or after start, or -1.

    With eof, a match that ends at the last line (or just before the
    trailing empty element of newline-terminated content) wins.
    """
    n = len(block)
    last = len(lines) - n
    if n == 0 or last < start:
        return -1

    for normalize in _MATCH_MODES:
        haystack = [normalize(ln) for ln in lines]
        needle = [normalize(ln) for ln in block]

        if eof:
            tail = [last]
            if lines and lines[-1] == "":
                tail.insert(0, last - 1)
            for pos in tail:
                if pos >= start and _matches_at(haystack, needle, pos):
                    return pos

        for pos in range(start, last + 1):
            if haystack[pos] == needle[0] and _matches_at(haystack, needle, pos):
                return pos
    return -1


def _context_preview(block: list[str], limit: int = 6) -> str:
    shown = "\n".join(f"    {ln}" for ln in block[:limit])
    if len(block) > limit:
        shown += f"\n    ... ({len(block) - limit} more lines)"
    return shown


def apply_hunks(content: str, hunks: list[Hunk], path: str) -> str:
    """Apply context hunks to content in order; raises PatchApplyError on mismatch."""
    lines = content.split("\n")
    cursor = 0
    for number, hunk in enumerate(hunks, start=1):
        if not hunk.old_lines:
            # pure insertion: append, keeping the trailing newline
            at = len(lines) - 1 if lines and lines[-1] == "" else len(lines)
            lines[at:at] = hunk.new_lines
            cursor = at + len(hunk.new_lines)
            continue

        pos = find_block(lines, hunk.old_lines, cursor, hunk.is_eof)
        if pos < 0:
            where = f" (@@ {hunk.header})" if hunk.header else ""
            anchor = " at end of file" if hunk.is_eof else ""
            raise PatchApplyError(
                path,
                f"Context for hunk {number}{where} not found{anchor}. Expected:\n"
                + _context_preview(hunk.old_lines),
            )
        lines[pos:pos + len(hunk.old_lines)] = hunk.new_lines
        cursor = pos + len(hunk.new_lines)
    return "\n".join(lines)


# ============================================================
# Search/replace edits
# ============================================================

def _closest_line_hint(content: str, search: str) -> str:
    first = next((ln.strip() for ln in search.split("\n") if ln.strip()), "")
    if not first:
        return ""
    lines = content.split("\n")
    stripped = [ln.strip() for ln in lines]
    close = difflib.get_close_matches(first, stripped, n=1, cutoff=0.6)
    if not close:
        return ""
    index = stripped.index(close[0])
    return f" Closest line {index + 1}: {lines[index].strip()[:120]!r}"


def apply_edits(content: str, edits: list[EditOperation], path: str) -> str:
    """Apply exact search/replace edits in order.

    Each search must occur exactly once unless its replace_all is set.
    """
    for number, edit in enumerate(edits, start=1):
        count = content.count(edit.search)
        if count == 0:
            raise PatchApplyError(
                path,
                f"Search content not found (block {number})." + _closest_line_hint(content, edit.search),
            )
        if count > 1 and not edit.replace_all:
            raise PatchApplyError(
                path,
                f"Multiple occurrences found ({count}) for block {number}; the edit is ambiguous. "
                f"Add surrounding lines to make the search unique, or use replace_all.",
            )
        if edit.replace_all:
            content = content.replace(edit.search, edit.replace)
        else:
            content = content.replace(edit.search, edit.replace, 1)
    return content


# ============================================================
# Staging and commit
# ============================================================

class _Overlay:
    """Staged view of the backend. None marks a file that will not exist."""

    def __init__(self, fs: FileAccess):
        self.fs = fs
        self.staged: dict[str, str | None] = {}

    def read(self, path: str) -> str | None:
        if path in self.staged:
            return self.staged[path]
        return _read_or_none(self.fs, path)

    def stage(self, path: str, content: str | None) -> None:
        self.staged[path] = content


def _read_or_none(fs: FileAccess, path: str) -> str | None:
    """Current content of path, or None when it doesn't exist.

    Raises:
        PatchApplyError: the file exists but can't be read as text.
    """
    try:
        return fs.open(path)
    except FileNotFoundError:
        return None
    except UnicodeDecodeError:
        raise PatchApplyError(path, "File is not valid UTF-8 text")
    except OSError as e:
        raise PatchApplyError(path, f"Could not read file: {e.strerror or e}")


def _stage_operation(op: PatchOperation, path: str, move_to: str | None,
                     overlay: _Overlay, summary: PatchSummary) -> None:
    # path and move_to are the canonical forms of op.path and op.move_to
    if isinstance(op, CreateFile):
        if overlay.read(path) is not None:
            raise PatchApplyError(path, "File already exists")
        overlay.stage(path, op.content)
        summary.added.append(path)
        return

    if isinstance(op, DeleteFile):
        if overlay.read(path) is None:
            raise PatchApplyError(path, "File does not exist")
        overlay.stage(path, None)
        summary.deleted.append(path)
        return

    if isinstance(op, UpdateFile):
        content = overlay.read(path)
        if content is None:
            raise PatchApplyError(path, "File does not exist")
        if op.hunks:
            content = apply_hunks(content, op.hunks, path)
        if op.edits:
            content = apply_edits(content, op.edits, path)

        if move_to and move_to != path:
            if overlay.read(move_to) is not None:
                raise PatchApplyError(move_to, "Move destination already exists")
            overlay.stage(move_to, content)
            overlay.stage(path, None)
            summary.modified.append(move_to)
            summary.deleted.append(path)
        else:
            overlay.stage(path, content)
            if path not in summary.modified and path not in summary.added:
                summary.modified.append(path)
        return

    raise TypeError(f"Unknown patch operation: {type(op).__name__}")


def _commit(overlay: _Overlay, fs: FileAccess) -> None:
    journal: list[tuple[str, str | None]] = []  # (path, content before our change)
    for path, content in overlay.staged.items():
        try:
            prior = _read_or_none(fs, path)
            if content == prior:
                continue
            journal.append((path, prior))
            if content is None:
                fs.remove(path)
            else:
                fs.write(path, content)
        except Exception as e:
            problems = _rollback(journal, fs)
            reason = f"{type(e).__name__}: {e}"
            if problems:
                reason += "; rollback incomplete for " + ", ".join(problems)
            else:
                reason += "; all changes rolled back"
            audit = get_audit_log()
            if audit is not None:
                audit.rollback([p for p, _ in journal], reason)
            raise PatchApplyError(path, reason) from e


def _rollback(journal: list[tuple[str, str | None]], fs: FileAccess) -> list[str]:
    """Undo journal entries newest first. Returns paths that couldn't be restored."""
    problems = []
    for path, prior in reversed(journal):
        try:
            current = _read_or_none(fs, path)
            if current == prior:
                continue
            if prior is None:
                fs.remove(path)
            else:
                fs.write(path, prior)
        except Exception:
            problems.append(path)
    return problems


def apply_plan(plan: list[PatchOperation], fs: FileAccess) -> PatchSummary:
    """Apply every operation in plan, or none of them.

    Raises:
        PatchApplyError: naming the failing path and the reason.
    """
    targets = []
    for op in plan:
        path = check_relative_path(op.path)
        move_to = None
        if isinstance(op, UpdateFile) and op.move_to:
            move_to = check_relative_path(op.move_to)
        targets.append((op, path, move_to))

    overlay = _Overlay(fs)
    summary = PatchSummary()
    for op, path, move_to in targets:
        _stage_operation(op, path, move_to, overlay, summary)

    _commit(overlay, fs)
    return summary


def plan_paths(plan: list[PatchOperation], workdir: str) -> list[str]:
    """Absolute paths a plan touches, for approval and display."""
    paths = []
    for op in plan:
        paths.append(op.path)
        if isinstance(op, UpdateFile) and op.move_to:
            paths.append(op.move_to)
    return [os.path.normpath(os.path.join(workdir, p)) for p in dict.fromkeys(paths)]
