"""Spawn a process, capture its output, and enforce timeout and cancellation.

Every sandbox strategy ends up here: the unrestricted strategy passes the
command straight through, the restricted ones pass a wrapped command.

The child is started in its own session (process group) on POSIX so that
a timeout or cancellation can kill everything it spawned, not just the
direct child.
"""

import os
import signal
import subprocess
import threading
import time

from core.sandbox import (
    DEFAULT_TIMEOUT_MS,
    MAX_OUTPUT_SIZE,
    TIMEOUT_EXIT_CODE,
    ExecutionRequest,
    ExecutionResult,
    failure,
    truncate_output,
)


# How often the wait loop wakes up to check the deadline and cancel flag
_POLL_INTERVAL_S = 0.05

# How long to wait for pipes to drain after the process group was killed
_KILL_GRACE_S = 2.0


def _kill_process_group(proc: subprocess.Popen) -> None:
    """Force-terminate proc and, on POSIX, its whole process group."""
    if os.name == "posix":
        try:
            os.killpg(proc.pid, signal.SIGKILL)
            return
        except OSError:
            pass  # already gone, or not a group leader; fall through
    try:
        proc.kill()
    except OSError:
        pass


def run_process(
    argv: list[str],
    cwd: str | None = None,
    timeout_ms: int = DEFAULT_TIMEOUT_MS,
    max_output_size: int = MAX_OUTPUT_SIZE,
    cancel_event: threading.Event | None = None,
) -> ExecutionResult:
    """Run argv to completion and return its captured output.

    Never raises. Spawn errors come back as exit_code 1 with the OS message
    in stderr; timeouts and cancellation come back as TIMEOUT_EXIT_CODE after
    the process group has been killed.
    """
    start = time.monotonic()
    if cwd and not os.path.isdir(cwd):
        return failure(f"Working directory does not exist: {cwd}")

    popen_kwargs = {}
    if os.name == "posix":
        popen_kwargs["start_new_session"] = True
    else:
        popen_kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP

    try:
        proc = subprocess.Popen(
            argv,
            cwd=cwd,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            encoding="utf-8",
            errors="replace",
            **popen_kwargs,
        )
    except FileNotFoundError as e:
        missing = e.filename or argv[0]
        return failure(f"Command not found: {missing}")
    except PermissionError as e:
        return failure(f"Permission denied: {e}")
    except (OSError, ValueError) as e:
        return failure(f"OS error: {e}")

    deadline = start + timeout_ms / 1000
    stopped = ""  # "timeout" or "cancelled" once we kill the child
    stdout = stderr = ""

    while True:
        if cancel_event is not None and cancel_event.is_set():
            stopped = "cancelled"
            break
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            stopped = "timeout"
            break
        try:
            stdout, stderr = proc.communicate(timeout=min(_POLL_INTERVAL_S, remaining))
            break
        except subprocess.TimeoutExpired:
            continue

    if stopped:
        _kill_process_group(proc)
        try:
            stdout, stderr = proc.communicate(timeout=_KILL_GRACE_S)
        except subprocess.TimeoutExpired:
            # A grandchild escaped the group and still holds the pipes
            proc.stdout.close()
            proc.stderr.close()
            proc.wait()

    duration_ms = int((time.monotonic() - start) * 1000)
    stdout = truncate_output(stdout or "", max_output_size)
    stderr = truncate_output(stderr or "", max_output_size)

    if stopped == "timeout":
        note = f"Command timed out after {timeout_ms} ms."
        return ExecutionResult(
            stdout=stdout,
            stderr=f"{stderr}\n{note}" if stderr else note,
            exit_code=TIMEOUT_EXIT_CODE,
            duration_ms=duration_ms,
        )
    if stopped == "cancelled":
        note = "Command was cancelled."
        return ExecutionResult(
            stdout=stdout,
            stderr=f"{stderr}\n{note}" if stderr else note,
            exit_code=TIMEOUT_EXIT_CODE,
            duration_ms=duration_ms,
        )

    return ExecutionResult(
        stdout=stdout,
        stderr=stderr,
        exit_code=proc.returncode,
        duration_ms=duration_ms,
    )


def spawn_background(argv: list[str], cwd: str | None = None) -> ExecutionResult:
    """Start argv detached from this process and return immediately.

    All standard streams go to the null device. A daemon thread reaps the
    child once it exits; the child still outlives the caller if it wants to.
    """
    popen_kwargs = {}
    if os.name == "posix":
        popen_kwargs["start_new_session"] = True
    else:
        popen_kwargs["creationflags"] = (
            subprocess.DETACHED_PROCESS | subprocess.CREATE_NEW_PROCESS_GROUP
        )
    try:
        proc = subprocess.Popen(
            argv,
            cwd=cwd,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            **popen_kwargs,
        )
    except FileNotFoundError as e:
        return failure(f"Command not found: {e.filename or argv[0]}")
    except (OSError, ValueError) as e:
        return failure(f"OS error: {e}")

    # Reap the child when it exits so it doesn't linger as a zombie
    threading.Thread(target=proc.wait, name=f"reap-{proc.pid}", daemon=True).start()

    return ExecutionResult(
        stdout=f"Started background process with PID: {proc.pid}\nCommand: {' '.join(argv)}",
        stderr="",
        exit_code=0,
        background=True,
        pid=proc.pid,
    )


def execute(
    command: list[str],
    request: ExecutionRequest,
    config: dict,
    cancel_event: threading.Event | None = None,
) -> ExecutionResult:
    """Unrestricted strategy: run the command as-is in the request's cwd."""
    return run_process(
        command,
        cwd=request.cwd,
        timeout_ms=request.timeout_ms,
        max_output_size=config.get("max_output_size", MAX_OUTPUT_SIZE),
        cancel_event=cancel_event,
    )
