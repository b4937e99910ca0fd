"""Platform command adaptation for riker.

Rewrites POSIX utility invocations into their Windows equivalents before
execution. Most replacements are cmd.exe built-ins (dir, type, del, ...),
so they are wrapped in `cmd.exe /c` rather than spawned directly.

On every other platform the command is returned unchanged.
"""

import sys


# ============================================================
# Utility mapping: POSIX name -> (native name, needs cmd.exe wrapper)
# ============================================================

# echo is left alone: its quoting rules differ too much to translate safely.
_COMMAND_MAP = {
    "ls": ("dir", True),
    "grep": ("findstr", True),
    "cat": ("type", True),
    "rm": ("del", True),
    "cp": ("copy", True),
    "mv": ("move", True),
    "touch": ("echo.", True),
    "mkdir": ("md", True),
    "pwd": ("cd", True),
}

# Per-utility flag translation
_OPTION_MAP = {
    "ls": {
        "-l": "/p",
        "-a": "/a",
        "-R": "/s",
    },
    "grep": {
        "-i": "/i",
        "-r": "/s",
    },
}

# Leading tokens that mean the model pasted a prompt, not a program
PROMPT_TOKENS = {"$", ">", "#"}


def needs_adaptation(platform: str | None = None) -> bool:
    """True when commands for this platform go through the mapping table."""
    return (platform or sys.platform) == "win32"


def adapt(command: list[str], platform: str | None = None) -> list[str]:
    """Adapt a command token list for the host platform.

    Pure: never mutates the input, never raises for list input.

    Args:
        command: argv-style tokens, program name first.
        platform: Override for sys.platform (tests use "win32").

    Returns:
        A new list when a mapping applied, otherwise the input list itself.
    """
    if not needs_adaptation(platform):
        return command
    if not command:
        return command

    first = command[0].strip() if isinstance(command[0], str) else ""
    if not first or first in PROMPT_TOKENS:
        return command

    mapping = _COMMAND_MAP.get(first)
    if mapping is None:
        return command

    native, use_shell = mapping
    adapted = [native] + list(command[1:])

    options = _OPTION_MAP.get(first)
    if options:
        adapted = [adapted[0]] + [options.get(arg, arg) for arg in adapted[1:]]

    if use_shell:
        adapted = ["cmd.exe", "/c"] + adapted

    return adapted
