"""Search/replace editing: SEARCH/REPLACE blocks and multi-file edit lists."""

import os

from core.approval import ApprovalGate
from core.audit_log import get_audit_log
from core.file_access import DiskFileAccess, FileAccess
from core.patch_applier import apply_plan, plan_paths
from core.patch_ops import EditOperation, PatchApplyError, PatchParseError, UpdateFile
from core.patch_search_replace import parse_search_replace
from core.sandbox import writable_roots


def _relative(path: str, workdir: str) -> str:
    """Patch paths are relative; an absolute path is made relative to workdir."""
    if os.path.isabs(path):
        return os.path.relpath(path, workdir)
    return path


def apply_search_replace(path: str, diff_text: str, workdir: str | None = None,
                         file_access: FileAccess | None = None, replace_all: bool = False) -> str:
    """Apply SEARCH/REPLACE blocks to one file.

    Every block must match the file exactly, whitespace included, and exactly
    once unless replace_all. All blocks apply or none do.

    Returns:
        "Successfully applied N search/replace operation(s) to PATH"

    Raises:
        PatchParseError: malformed blocks.
        PatchApplyError: a block didn't match, or matched more than once.
    """
    workdir = os.path.realpath(workdir or os.getcwd())
    fs = file_access or DiskFileAccess(workdir)
    rel = _relative(path, workdir)
    audit = get_audit_log()

    try:
        edits = parse_search_replace(diff_text, replace_all=replace_all)
        apply_plan([UpdateFile(rel, edits=edits)], fs)
    except PatchParseError as e:
        if audit is not None:
            audit.patch_apply("search_replace", False, error=str(e))
        raise
    except PatchApplyError as e:
        if audit is not None:
            audit.patch_apply("search_replace", False, error=str(e))
        raise PatchApplyError(e.path, f"Failed to apply search/replace: {e.reason}") from e

    if audit is not None:
        audit.patch_apply("search_replace", True, modified=1)
    return f"Successfully applied {len(edits)} search/replace operation(s) to {path}"


def multi_edit(edits: list[dict], workdir: str | None = None,
               file_access: FileAccess | None = None) -> str:
    """Apply a list of exact string edits across one or more files, atomically.

    Each edit is {"path", "old_string", "new_string", "replace_all"?}. Edits
    to the same file apply in list order, each against the result of the
    previous one.

    Returns:
        "Applied N edits to M file(s)"

    Raises:
        ValueError: an edit is missing a field or has an empty old_string.
        PatchApplyError: any edit failed; no file was changed.
    """
    workdir = os.path.realpath(workdir or os.getcwd())
    fs = file_access or DiskFileAccess(workdir)

    if not edits:
        raise ValueError("No edits given")

    by_path: dict[str, UpdateFile] = {}
    for number, edit in enumerate(edits, start=1):
        try:
            path = edit["path"]
            old, new = edit["old_string"], edit["new_string"]
        except (KeyError, TypeError):
            raise ValueError(f"Edit {number} needs path, old_string and new_string")
        if old == new:
            raise PatchApplyError(path, f"Edit {number}: old_string and new_string are identical")
        rel = _relative(path, workdir)
        op = by_path.setdefault(rel, UpdateFile(rel))
        op.edits.append(EditOperation(old, new, bool(edit.get("replace_all", False))))

    audit = get_audit_log()
    try:
        summary = apply_plan(list(by_path.values()), fs)
    except PatchApplyError as e:
        if audit is not None:
            audit.patch_apply("multi_edit", False, error=str(e))
        raise

    if audit is not None:
        audit.patch_apply("multi_edit", True, modified=len(summary.modified))
    return f"Applied {len(edits)} edits to {len(by_path)} file(s)"


# ============================================================
# Tool surfaces (dict results, never raise)
# ============================================================

def _review(gate: ApprovalGate | None, paths: list[str], workdir: str) -> dict | None:
    """None when the edit may proceed, otherwise the refusal result."""
    if gate is None:
        return None
    decision = gate.review_patch(paths, writable_roots(workdir))
    if decision.approved:
        return None
    return {
        "ok": False,
        "error": f"Edit not applied: {getattr(decision, 'reason', 'denied')}",
        "aborts_turn": decision.aborts_turn,
    }


def edit(path: str, diff: str, workdir: str | None = None, gate: ApprovalGate | None = None) -> dict:
    """Tool entry point for SEARCH/REPLACE blocks against one file."""
    workdir = os.path.realpath(workdir or os.getcwd())
    refused = _review(gate, [os.path.join(workdir, path)], workdir)
    if refused:
        return refused
    try:
        return {"ok": True, "message": apply_search_replace(path, diff, workdir)}
    except (PatchParseError, PatchApplyError, ValueError) as e:
        return {"ok": False, "error": str(e)}


def multi_edit_tool(edits: list[dict], workdir: str | None = None, gate: ApprovalGate | None = None) -> dict:
    """Tool entry point for multi-file exact edits."""
    workdir = os.path.realpath(workdir or os.getcwd())
    paths = [e.get("path", "") for e in edits if isinstance(e, dict)]
    plan = [UpdateFile(p) for p in dict.fromkeys(paths) if p]
    refused = _review(gate, plan_paths(plan, workdir), workdir)
    if refused:
        return refused
    try:
        return {"ok": True, "message": multi_edit(edits, workdir)}
    except (PatchApplyError, ValueError) as e:
        return {"ok": False, "error": str(e)}
