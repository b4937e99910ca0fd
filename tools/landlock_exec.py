"""Linux restricted strategy: run a command under a Landlock ruleset.

Landlock restrictions apply to the calling thread and everything it execs,
so they can't be installed from this process without locking riker itself
down. Instead the command is launched through this file as a small helper:

    python landlock_exec.py --writable-root DIR [...] -- CMD ARGS...

The helper sets no_new_privs, builds a ruleset that handles every
filesystem write right, grants those rights beneath each writable root,
restricts itself, then execs CMD. If the kernel has no Landlock support the
helper fails closed: it prints an error and exits 1 without running CMD.

Only stdlib imports at module level; the helper runs as a bare script.
"""

import ctypes
import os
import struct
import sys
import threading


# ============================================================
# Landlock ABI constants (include/uapi/linux/landlock.h)
# ============================================================

_SYS_LANDLOCK_CREATE_RULESET = 444
_SYS_LANDLOCK_ADD_RULE = 445
_SYS_LANDLOCK_RESTRICT_SELF = 446

_LANDLOCK_CREATE_RULESET_VERSION = 1 << 0
_LANDLOCK_RULE_PATH_BENEATH = 1

_PR_SET_NO_NEW_PRIVS = 38

ACCESS_FS_EXECUTE = 1 << 0
ACCESS_FS_WRITE_FILE = 1 << 1
ACCESS_FS_READ_FILE = 1 << 2
ACCESS_FS_READ_DIR = 1 << 3
ACCESS_FS_REMOVE_DIR = 1 << 4
ACCESS_FS_REMOVE_FILE = 1 << 5
ACCESS_FS_MAKE_CHAR = 1 << 6
ACCESS_FS_MAKE_DIR = 1 << 7
ACCESS_FS_MAKE_REG = 1 << 8
ACCESS_FS_MAKE_SOCK = 1 << 9
ACCESS_FS_MAKE_FIFO = 1 << 10
ACCESS_FS_MAKE_BLOCK = 1 << 11
ACCESS_FS_MAKE_SYM = 1 << 12
ACCESS_FS_REFER = 1 << 13        # ABI 2
ACCESS_FS_TRUNCATE = 1 << 14     # ABI 3

# Every right that mutates the filesystem in ABI 1
_WRITE_ACCESS_V1 = (
    ACCESS_FS_WRITE_FILE
    | ACCESS_FS_REMOVE_DIR
    | ACCESS_FS_REMOVE_FILE
    | ACCESS_FS_MAKE_CHAR
    | ACCESS_FS_MAKE_DIR
    | ACCESS_FS_MAKE_REG
    | ACCESS_FS_MAKE_SOCK
    | ACCESS_FS_MAKE_FIFO
    | ACCESS_FS_MAKE_BLOCK
    | ACCESS_FS_MAKE_SYM
)

# Rights the kernel accepts on a rule whose target is a file, not a directory
_FILE_ACCESS = ACCESS_FS_EXECUTE | ACCESS_FS_WRITE_FILE | ACCESS_FS_READ_FILE | ACCESS_FS_TRUNCATE


class LandlockError(OSError):
    """A Landlock syscall failed."""


def handled_write_access(abi: int) -> int:
    """Write rights to handle for a given Landlock ABI version."""
    access = _WRITE_ACCESS_V1
    if abi >= 2:
        # REFER is implicitly denied from ABI 2 unless handled and granted
        access |= ACCESS_FS_REFER
    if abi >= 3:
        access |= ACCESS_FS_TRUNCATE
    return access


def _libc():
    libc = ctypes.CDLL(None, use_errno=True)
    libc.syscall.restype = ctypes.c_long
    return libc


def _syscall(libc, number: int, *args) -> int:
    result = libc.syscall(ctypes.c_long(number), *args)
    if result < 0:
        err = ctypes.get_errno()
        raise LandlockError(err, f"syscall {number} failed: {os.strerror(err)}")
    return result


def landlock_abi_version(libc=None) -> int:
    """Return the kernel's Landlock ABI version, or 0 when unsupported."""
    libc = libc or _libc()
    try:
        return _syscall(
            libc, _SYS_LANDLOCK_CREATE_RULESET,
            ctypes.c_void_p(None), ctypes.c_size_t(0),
            ctypes.c_uint32(_LANDLOCK_CREATE_RULESET_VERSION),
        )
    except LandlockError:
        return 0


def restrict_to_writable_roots(roots: list[str]) -> None:
    """Install a Landlock ruleset on this thread allowing writes only beneath roots.

    Raises LandlockError when the kernel doesn't support Landlock or a
    syscall fails. Roots that don't exist are skipped.
    """
    libc = _libc()
    abi = landlock_abi_version(libc)
    if abi < 1:
        raise LandlockError("Landlock is not supported by this kernel")

    handled = handled_write_access(abi)

    # struct landlock_ruleset_attr: only handled_access_fs is needed
    ruleset_attr = ctypes.create_string_buffer(struct.pack("=Q", handled))
    ruleset_fd = _syscall(
        libc, _SYS_LANDLOCK_CREATE_RULESET,
        ruleset_attr, ctypes.c_size_t(8), ctypes.c_uint32(0),
    )

    try:
        targets = [(root, handled) for root in roots]
        targets.append(("/dev/null", handled & _FILE_ACCESS))
        for path, access in targets:
            if not os.path.exists(path):
                continue
            if not os.path.isdir(path):
                access &= _FILE_ACCESS
            fd = os.open(path, os.O_PATH | os.O_CLOEXEC)
            try:
                # struct landlock_path_beneath_attr is packed: u64 + s32
                rule = ctypes.create_string_buffer(struct.pack("=Qi", access, fd))
                _syscall(
                    libc, _SYS_LANDLOCK_ADD_RULE,
                    ctypes.c_int(ruleset_fd), ctypes.c_int(_LANDLOCK_RULE_PATH_BENEATH),
                    rule, ctypes.c_uint32(0),
                )
            finally:
                os.close(fd)

        if libc.prctl(_PR_SET_NO_NEW_PRIVS, 1, 0, 0, 0) != 0:
            err = ctypes.get_errno()
            raise LandlockError(err, f"prctl(PR_SET_NO_NEW_PRIVS) failed: {os.strerror(err)}")

        _syscall(libc, _SYS_LANDLOCK_RESTRICT_SELF, ctypes.c_int(ruleset_fd), ctypes.c_uint32(0))
    finally:
        os.close(ruleset_fd)


# ============================================================
# Strategy entry point (runs in riker's process)
# ============================================================

def build_landlock_command(command: list[str], roots: list[str]) -> list[str]:
    """Wrap command so it runs through this file's helper mode."""
    helper = [sys.executable, os.path.abspath(__file__)]
    for root in roots:
        helper += ["--writable-root", root]
    return helper + ["--", *command]


def execute(
    command: list[str],
    request,
    config: dict,
    cancel_event: threading.Event | None = None,
):
    """Linux restricted strategy."""
    from core.sandbox import MAX_OUTPUT_SIZE, writable_roots
    from tools.raw_exec import run_process

    roots = writable_roots(request.cwd, request.additional_writable_roots)
    return run_process(
        build_landlock_command(command, roots),
        cwd=request.cwd,
        timeout_ms=request.timeout_ms,
        max_output_size=config.get("max_output_size", MAX_OUTPUT_SIZE),
        cancel_event=cancel_event,
    )


# ============================================================
# Helper mode (runs in the child before exec)
# ============================================================

def _parse_helper_args(argv: list[str]) -> tuple[list[str], list[str]]:
    if "--" not in argv:
        raise ValueError("usage: landlock_exec.py [--writable-root DIR ...] -- CMD [ARGS...]")
    split = argv.index("--")
    options, command = argv[:split], argv[split + 1:]
    roots = []
    i = 0
    while i < len(options):
        if options[i] != "--writable-root" or i + 1 >= len(options):
            raise ValueError(f"unexpected helper argument: {options[i]}")
        roots.append(options[i + 1])
        i += 2
    if not command:
        raise ValueError("no command given")
    return roots, command


def main(argv: list[str]) -> int:
    try:
        roots, command = _parse_helper_args(argv)
    except ValueError as e:
        print(f"landlock: {e}", file=sys.stderr)
        return 1

    try:
        restrict_to_writable_roots(roots)
    except OSError as e:
        print(f"landlock: sandbox setup failed, refusing to run unrestricted: {e}", file=sys.stderr)
        return 1

    try:
        os.execvp(command[0], command)
    except FileNotFoundError:
        print(f"Command not found: {command[0]}", file=sys.stderr)
    except OSError as e:
        print(f"OS error: {e}", file=sys.stderr)
    return 1


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
