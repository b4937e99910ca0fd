"""Execution sandbox model for riker.

Holds everything the exec strategies share:
- ExecutionRequest / ExecutionResult: the immutable input and the
  always-produced output of one command execution
- SandboxKind: which OS isolation strategy runs the command
- writable_roots(): the one allowlist builder both restricted strategies use
- select_sandbox_kind(): host detection for the "auto" setting
- truncate_output(): output limits so a chatty command can't exhaust memory

SECURITY MODEL:
- Reads are allowed everywhere; writes only beneath the writable roots
- Writable roots = working directory + system temp dir + caller extras,
  all symlink-resolved (the kernel enforces on real paths)
- Enforcement is done by the OS (seatbelt / Landlock), never by this code
"""

import os
import sys
import tempfile
from dataclasses import asdict, dataclass, field
from enum import Enum


# ============================================================
# Limits and sentinels
# ============================================================

DEFAULT_TIMEOUT_MS = 30_000

# Maximum captured output per stream (1 MB)
MAX_OUTPUT_SIZE = 1024 * 1024

# Exit code reported when a command was killed for running past its timeout
# or cancelled. Real exit statuses are 0..255 and signal deaths are negative,
# so this can't collide with anything a process reports itself.
TIMEOUT_EXIT_CODE = 1024

BACKGROUND_UNSUPPORTED_MESSAGE = "Background execution is not supported with sandboxing enabled"

SEATBELT_EXECUTABLE = "/usr/bin/sandbox-exec"


class SandboxKind(Enum):
    NONE = "none"
    MAC_RESTRICTED = "macos.seatbelt"
    LINUX_RESTRICTED = "linux.landlock"

    @property
    def restricted(self) -> bool:
        return self is not SandboxKind.NONE


class SandboxUnavailableError(RuntimeError):
    """A sandbox was required but the host can't provide one."""


# ============================================================
# Request / result
# ============================================================

@dataclass(frozen=True)
class ExecutionRequest:
    """One command to run. Immutable once constructed.

    command is stored as a tuple; the first token is the program name.
    """

    command: tuple[str, ...]
    working_directory: str | None = None
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    additional_writable_roots: tuple[str, ...] = ()
    run_in_background: bool = False

    def __post_init__(self):
        # frozen: normalize through object.__setattr__
        object.__setattr__(self, "command", tuple(self.command))
        object.__setattr__(self, "additional_writable_roots", tuple(self.additional_writable_roots))
        if not self.command:
            raise ValueError("command must contain at least one token")
        if self.timeout_ms is None:
            object.__setattr__(self, "timeout_ms", DEFAULT_TIMEOUT_MS)
        if not isinstance(self.timeout_ms, int) or self.timeout_ms <= 0:
            raise ValueError(f"timeout_ms must be a positive integer, got {self.timeout_ms!r}")

    @property
    def cwd(self) -> str:
        return self.working_directory or os.getcwd()


@dataclass
class ExecutionResult:
    """Outcome of one execution. Every failure lands here as a non-zero exit_code."""

    stdout: str
    stderr: str
    exit_code: int
    background: bool = False
    pid: int | None = None
    duration_ms: int = field(default=0, compare=False)

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def timed_out(self) -> bool:
        return self.exit_code == TIMEOUT_EXIT_CODE

    def to_dict(self) -> dict:
        return asdict(self)


def failure(message: str, exit_code: int = 1, stdout: str = "") -> ExecutionResult:
    """Build a failed result with the message on stderr."""
    return ExecutionResult(stdout=stdout, stderr=message, exit_code=exit_code)


# ============================================================
# Writable roots (shared by every restricted strategy)
# ============================================================

def writable_roots(cwd: str | None = None, extra: list[str] | tuple = ()) -> list[str]:
    """Build the write allowlist: cwd, the temp dir, then any extras.

    Paths are realpath'd and de-duplicated in order. The seatbelt and
    Landlock strategies both call this so they agree on what is writable.
    """
    roots = [cwd or os.getcwd(), tempfile.gettempdir(), *extra]
    resolved = [os.path.realpath(os.path.expanduser(r)) for r in roots if r]
    return list(dict.fromkeys(resolved))


def is_within(path: str, roots: list[str]) -> bool:
    """True if path resolves to one of roots or somewhere beneath one."""
    resolved = os.path.realpath(path)
    return any(
        resolved.startswith(d.rstrip(os.sep) + os.sep) or resolved == d
        for d in roots
    )


# ============================================================
# Host detection
# ============================================================

def select_sandbox_kind(setting: str = "auto", platform: str | None = None) -> SandboxKind:
    """Resolve the configured sandbox setting into a SandboxKind.

    "auto" picks the native sandbox for the host. Raises
    SandboxUnavailableError when the host has none and one was mandated.
    """
    if isinstance(setting, SandboxKind):
        return setting
    setting = (setting or "auto").strip().lower()
    if setting != "auto":
        try:
            return SandboxKind(setting)
        except ValueError:
            valid = ", ".join(["auto"] + [k.value for k in SandboxKind])
            raise ValueError(f"Unknown sandbox setting: {setting!r} (expected one of {valid})")

    platform = platform or sys.platform
    if platform == "darwin":
        if not os.path.exists(SEATBELT_EXECUTABLE):
            raise SandboxUnavailableError(
                "Sandbox was mandated, but 'sandbox-exec' was not found in PATH!"
            )
        return SandboxKind.MAC_RESTRICTED
    if platform.startswith("linux"):
        return SandboxKind.LINUX_RESTRICTED
    if platform == "win32":
        print(
            "  WARN: No sandbox available on Windows; commands run unrestricted.",
            file=sys.stderr,
        )
        return SandboxKind.NONE
    raise SandboxUnavailableError("Sandbox was mandated, but no sandbox is available!")


# ============================================================
# Output limits
# ============================================================

def truncate_output(output: str, max_output_size: int = MAX_OUTPUT_SIZE) -> str:
    """Truncate output to max_output_size."""
    if len(output) > max_output_size:
        truncated = output[:max_output_size]
        return truncated + f"\n[...truncated at {max_output_size:,} chars]"
    return output
