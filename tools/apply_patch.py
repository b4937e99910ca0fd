"""Apply a context-block patch (*** Begin Patch ... *** End Patch)."""

import os
from typing import Callable

from core.approval import ApprovalGate
from core.audit_log import get_audit_log
from core.file_access import CallbackFileAccess, DiskFileAccess
from core.patch_applier import apply_plan, plan_paths
from core.patch_context import parse_patch
from core.patch_ops import PatchApplyError, PatchParseError
from core.sandbox import writable_roots


def process_patch(
    text: str,
    open_fn: Callable[[str], str],
    write_fn: Callable[[str, str], None],
    remove_fn: Callable[[str], None],
) -> str:
    """Parse text and apply it through the three callbacks.

    Returns "Done!" on success. Raises PatchParseError or PatchApplyError;
    on either, nothing the patch wrote is left behind.
    """
    plan = parse_patch(text)
    apply_plan(plan, CallbackFileAccess(open_fn, write_fn, remove_fn))
    return "Done!"


def apply_patch(patch_text: str, workdir: str | None = None, gate: ApprovalGate | None = None,
                extra_writable_roots: list[str] | None = None) -> dict:
    """Tool entry point: parse, get approval, apply against the disk.

    Args:
        patch_text: The full patch, markers included.
        workdir: Directory patch paths are relative to. Defaults to cwd.
        gate: Consulted with the touched paths. None applies without asking.
        extra_writable_roots: Added to cwd and temp when judging whether the
            patch stays inside the writable roots.

    Returns:
        dict with ok, added, modified, deleted, or ok=False with error.
        A deny-and-abort answer also sets aborts_turn.
    """
    workdir = os.path.realpath(workdir or os.getcwd())
    audit = get_audit_log()

    try:
        plan = parse_patch(patch_text)
    except PatchParseError as e:
        if audit is not None:
            audit.patch_apply("context", False, error=str(e))
        return {"ok": False, "error": f"Invalid patch: {e}"}

    if gate is not None:
        decision = gate.review_patch(
            plan_paths(plan, workdir),
            writable_roots(workdir, extra_writable_roots or ()),
        )
        if not decision.approved:
            return {
                "ok": False,
                "error": f"Patch not applied: {getattr(decision, 'reason', 'denied')}",
                "aborts_turn": decision.aborts_turn,
            }

    try:
        summary = apply_plan(plan, DiskFileAccess(workdir))
    except PatchApplyError as e:
        if audit is not None:
            audit.patch_apply("context", False, error=str(e))
        return {"ok": False, "error": f"Failed to apply patch: {e}"}

    if audit is not None:
        audit.patch_apply("context", True, len(summary.added), len(summary.modified), len(summary.deleted))
    return {"ok": True, **summary.to_dict()}
