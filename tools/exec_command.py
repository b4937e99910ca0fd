"""Execution dispatcher: the one entry point for running a requested command.

dispatch() never raises. Whatever goes wrong (a bad token, a missing
program, a sandbox that refuses background mode, an unexpected bug in a
strategy) comes back as an ExecutionResult with a non-zero exit_code and
the reason on stderr.

handle_exec_command() puts the approval gate in front of dispatch() and
shapes the result for the tool-call loop.
"""

import os
import shlex
import threading
import time

from core.approval import (
    ApprovalGate,
    Approved,
    DeniedAndAbort,
)
from core.audit_log import get_audit_log
from core.command_adapter import adapt
from core.sandbox import (
    BACKGROUND_UNSUPPORTED_MESSAGE,
    ExecutionRequest,
    ExecutionResult,
    SandboxKind,
    SandboxUnavailableError,
    failure,
    select_sandbox_kind,
)
from core.tool_protocol import exec_output
from tools import landlock_exec, raw_exec, seatbelt_exec


# One handler per sandbox kind; a missing entry is a KeyError, not a fallthrough
_STRATEGIES = {
    SandboxKind.NONE: raw_exec.execute,
    SandboxKind.MAC_RESTRICTED: seatbelt_exec.execute,
    SandboxKind.LINUX_RESTRICTED: landlock_exec.execute,
}

_OPERATOR_CHARS = set("();<>|&")

DENY_CONTINUE_NOTE = "No, don't do that - keep going though."
DENY_ABORT_NOTE = "No, don't do that - stop for now."


# ============================================================
# Shell detection
# ============================================================

def requires_shell(command: list[str] | tuple[str, ...]) -> bool:
    """True when command is one string that uses shell control operators.

    Commands already split into argv tokens never need a shell, even when one
    of the tokens is "|" or "&&"; they were split on purpose.
    """
    if len(command) != 1 or not isinstance(command[0], str):
        return False
    lexer = shlex.shlex(command[0], posix=True, punctuation_chars=True)
    lexer.whitespace_split = True
    try:
        tokens = list(lexer)
    except ValueError:
        # unbalanced quotes: let the program see it verbatim
        return False
    return any(tok and set(tok) <= _OPERATOR_CHARS for tok in tokens)


def _shell_wrap(script: str) -> list[str]:
    if os.name == "nt":
        return ["cmd.exe", "/c", script]
    return ["/bin/sh", "-c", script]


def prepare_command(command: list[str] | tuple[str, ...]) -> list[str]:
    """Turn request tokens into the argv that is actually spawned."""
    if requires_shell(command):
        return _shell_wrap(command[0])
    argv = list(command)
    if len(argv) == 1 and any(ch.isspace() for ch in argv[0].strip()):
        # a single "git status" style string: split it like a shell would
        argv = shlex.split(argv[0])
    return adapt(argv)


# ============================================================
# Dispatch
# ============================================================

def _run(request: ExecutionRequest, sandbox_kind: SandboxKind, config: dict,
         cancel_event: threading.Event | None) -> ExecutionResult:
    bad = [t for t in request.command if not isinstance(t, str)]
    if bad:
        return failure(f"Command tokens must be strings, got {type(bad[0]).__name__}: {bad[0]!r}")
    if not request.command[0].strip():
        return failure("Command is empty")

    argv = prepare_command(request.command)
    if not argv:
        return failure("Command is empty")

    if request.run_in_background:
        if sandbox_kind.restricted:
            audit = get_audit_log()
            if audit is not None:
                audit.sandbox_denied(BACKGROUND_UNSUPPORTED_MESSAGE, list(request.command))
            return ExecutionResult(
                stdout=BACKGROUND_UNSUPPORTED_MESSAGE,
                stderr=BACKGROUND_UNSUPPORTED_MESSAGE,
                exit_code=1,
            )
        return raw_exec.spawn_background(argv, cwd=request.cwd)

    return _STRATEGIES[sandbox_kind](argv, request, config, cancel_event)


def dispatch(
    request: ExecutionRequest,
    sandbox_kind: SandboxKind = SandboxKind.NONE,
    config: dict | None = None,
    cancel_event: threading.Event | None = None,
) -> ExecutionResult:
    """Run request under sandbox_kind and return its result. Never raises."""
    config = config or {}
    start = time.monotonic()
    try:
        result = _run(request, sandbox_kind, config, cancel_event)
    except Exception as e:
        result = failure(f"{type(e).__name__}: {e}")
    if not result.duration_ms:
        result.duration_ms = int((time.monotonic() - start) * 1000)

    audit = get_audit_log()
    if audit is not None:
        audit.exec(
            list(request.command),
            sandbox=getattr(sandbox_kind, "value", str(sandbox_kind)),
            exit_code=result.exit_code,
            duration_ms=result.duration_ms,
            background=result.background,
            timed_out=result.timed_out,
        )
    return result


# ============================================================
# Approval + dispatch for the tool-call loop
# ============================================================

def handle_exec_command(
    request: ExecutionRequest,
    gate: ApprovalGate,
    config: dict | None = None,
    cancel_event: threading.Event | None = None,
) -> dict:
    """Gate, run and shape one shell tool call.

    Returns {"output", "metadata"} for an executed command. A denial returns
    output "aborted" with the note to show the model, and aborts_turn set
    when the whole turn must stop.
    """
    config = config or {}
    decision = gate.review_command(list(request.command))

    if not decision.approved:
        aborts = isinstance(decision, DeniedAndAbort)
        return {
            "output": "aborted",
            "metadata": {},
            "aborts_turn": aborts,
            "denial_note": DENY_ABORT_NOTE if aborts else DENY_CONTINUE_NOTE,
        }

    if isinstance(decision, Approved) and decision.automatic:
        try:
            sandbox_kind = select_sandbox_kind(config.get("sandbox", "auto"))
        except (SandboxUnavailableError, ValueError) as e:
            # the host can't confine it, so it doesn't run
            audit = get_audit_log()
            if audit is not None:
                audit.sandbox_denied(str(e), list(request.command))
            return exec_output(failure(str(e)), 0)
    else:
        # a person looked at this exact command and said yes
        sandbox_kind = SandboxKind.NONE

    result = dispatch(request, sandbox_kind, config, cancel_event)
    return exec_output(result, result.duration_ms / 1000)
