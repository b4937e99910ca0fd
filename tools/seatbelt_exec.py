"""macOS restricted strategy: run a command under sandbox-exec (seatbelt).

The profile starts closed-by-default, re-opens reads, process spawning and
a short list of sysctls, then grants file writes only beneath the writable
roots. Roots are passed as -D parameters rather than spliced into the
profile text, so odd characters in a path can't change the policy.
"""

import threading

from core.sandbox import (
    MAX_OUTPUT_SIZE,
    SEATBELT_EXECUTABLE,
    ExecutionRequest,
    ExecutionResult,
    writable_roots,
)
from tools.raw_exec import run_process


READ_ONLY_SEATBELT_POLICY = """
(version 1)

; closed by default
(deny default)

; reads are allowed everywhere
(allow file-read*)

; child processes inherit this policy
(allow process-exec)
(allow process-fork)
(allow signal (target self))

(allow file-write-data
  (require-all
    (path "/dev/null")
    (vnode-type CHARACTER-DEVICE)))

(allow sysctl-read
  (sysctl-name "hw.activecpu")
  (sysctl-name "hw.busfrequency_compat")
  (sysctl-name "hw.byteorder")
  (sysctl-name "hw.cacheconfig")
  (sysctl-name "hw.cachelinesize_compat")
  (sysctl-name "hw.cpufamily")
  (sysctl-name "hw.cpufrequency_compat")
  (sysctl-name "hw.cputype")
  (sysctl-name "hw.l1dcachesize_compat")
  (sysctl-name "hw.l1icachesize_compat")
  (sysctl-name "hw.l2cachesize_compat")
  (sysctl-name "hw.l3cachesize_compat")
  (sysctl-name "hw.logicalcpu_max")
  (sysctl-name "hw.machine")
  (sysctl-name "hw.memsize")
  (sysctl-name "hw.ncpu")
  (sysctl-name "hw.nperflevels")
  (sysctl-name "hw.packages")
  (sysctl-name "hw.pagesize")
  (sysctl-name "hw.pagesize_compat")
  (sysctl-name "hw.physicalcpu_max")
  (sysctl-name "hw.tbfrequency_compat")
  (sysctl-name "hw.vectorunit")
  (sysctl-name "kern.hostname")
  (sysctl-name "kern.maxfilesperproc")
  (sysctl-name "kern.osproductversion")
  (sysctl-name "kern.osrelease")
  (sysctl-name "kern.ostype")
  (sysctl-name "kern.osvariant_status")
  (sysctl-name "kern.osversion")
  (sysctl-name "kern.secure_kernel")
  (sysctl-name "kern.usrstack64")
  (sysctl-name "kern.version")
  (sysctl-name "sysctl.proc_cputype")
  (sysctl-name-prefix "hw.optional.")
  (sysctl-name-prefix "hw.perflevel")
)
""".strip()


def build_seatbelt_policy(roots: list[str]) -> tuple[str, list[str]]:
    """Return (policy text, -D parameter args) granting writes beneath roots."""
    if not roots:
        return READ_ONLY_SEATBELT_POLICY, []

    subpaths = []
    params = []
    for index, root in enumerate(roots):
        name = f"WRITABLE_ROOT_{index}"
        subpaths.append(f'  (subpath (param "{name}"))')
        params.append(f"-D{name}={root}")

    policy = READ_ONLY_SEATBELT_POLICY + "\n(allow file-write*\n" + "\n".join(subpaths) + "\n)"
    return policy, params


def build_seatbelt_command(command: list[str], roots: list[str]) -> list[str]:
    """Wrap command in a sandbox-exec invocation."""
    policy, params = build_seatbelt_policy(roots)
    return [SEATBELT_EXECUTABLE, "-p", policy, *params, "--", *command]


def execute(
    command: list[str],
    request: ExecutionRequest,
    config: dict,
    cancel_event: threading.Event | None = None,
) -> ExecutionResult:
    """macOS restricted strategy."""
    roots = writable_roots(request.cwd, request.additional_writable_roots)
    return run_process(
        build_seatbelt_command(command, roots),
        cwd=request.cwd,
        timeout_ms=request.timeout_ms,
        max_output_size=config.get("max_output_size", MAX_OUTPUT_SIZE),
        cancel_event=cancel_event,
    )
