"""Configuration file support for riker.

Loads settings from .riker.toml (project-level) or ~/.riker.toml (user-level).
CLI flags override config file values. Config file overrides defaults.
"""

import os
import sys
import tomllib
from pathlib import Path

from core.sandbox import DEFAULT_TIMEOUT_MS, MAX_OUTPUT_SIZE


# Default configuration values (same as CLI defaults)
DEFAULTS = {
    "approval_policy": "suggest",
    "sandbox": "auto",
    "timeout_ms": DEFAULT_TIMEOUT_MS,
    "writable_roots": [],
    "max_output_size": MAX_OUTPUT_SIZE,
    "audit_log": True,
    "audit_log_dir": None,
    "high_risk_patterns": [],
    "medium_risk_patterns": [],
    "cwd": None,
}

# Config file search order (first found wins)
CONFIG_FILENAMES = [".riker.toml", "riker.toml"]
CONFIG_SEARCH_DIRS = [
    ".",                          # Current directory (project-level)
    str(Path.home()),             # Home directory (user-level)
]


def find_config_file() -> str | None:
    """Find the first config file in the search path."""
    for directory in CONFIG_SEARCH_DIRS:
        for filename in CONFIG_FILENAMES:
            path = os.path.join(directory, filename)
            if os.path.isfile(path):
                return path
    return None


def load_config(config_path: str = None) -> dict:
    """Load configuration from file.

    Args:
        config_path: Explicit path to config file. If None, searches default locations.

    Returns:
        Dict of configuration values. Missing keys use DEFAULTS.
    """
    config = {k: (list(v) if isinstance(v, list) else v) for k, v in DEFAULTS.items()}

    path = config_path or find_config_file()
    if not path or not os.path.isfile(path):
        return config

    try:
        with open(path, "rb") as f:
            file_config = tomllib.load(f)
    except OSError as e:
        print(f"  WARN: Could not read config {path}: {e}", file=sys.stderr)
        return config
    except tomllib.TOMLDecodeError as e:
        print(f"  WARN: Invalid TOML in {path}: {e}. Using defaults.", file=sys.stderr)
        return config

    # Normalize key names (TOML uses - or _, CLI uses _)
    normalized = {key.replace("-", "_"): value for key, value in file_config.items()}

    # Merge: file values override defaults; unknown keys are ignored
    for key, value in normalized.items():
        if key in config:
            config[key] = value

    config["_config_file"] = path
    return config


def merge_cli_args(config: dict, args) -> dict:
    """Merge CLI arguments over config file values.

    CLI args that are None or False (defaults) don't override config.
    Explicitly set CLI args always win. Repeated --writable-root values are
    added to the configured roots rather than replacing them.
    """
    result = dict(config)

    # Map argparse attribute names to config keys
    mappings = {
        "approval_policy": "approval_policy",
        "sandbox": "sandbox",
        "timeout": "timeout_ms",
        "max_output_size": "max_output_size",
        "audit_log_dir": "audit_log_dir",
        "workdir": "cwd",
    }

    for arg_name, config_key in mappings.items():
        cli_value = getattr(args, arg_name, None)
        if cli_value is None:
            continue
        # For boolean flags: only override if True (explicitly set)
        if isinstance(cli_value, bool) and not cli_value:
            continue
        result[config_key] = cli_value

    if getattr(args, "no_audit_log", False):
        result["audit_log"] = False

    extra_roots = getattr(args, "writable_root", None)
    if extra_roots:
        result["writable_roots"] = list(result.get("writable_roots") or []) + list(extra_roots)

    return result


def generate_sample_config() -> str:
    """Generate a sample .riker.toml config file."""
    return '''# riker configuration
# Place this file at .riker.toml (project) or ~/.riker.toml (user)

# How much confirmation is needed before commands and patches run:
#   "suggest"   ask before every command and patch
#   "auto-edit" apply in-project patches without asking, ask for commands
#   "full-auto" run low/medium risk commands without asking (high risk still asks)
approval_policy = "suggest"

# Sandbox for auto-approved commands: "auto", "none", "macos.seatbelt", "linux.landlock"
sandbox = "auto"

# Execution limits
timeout_ms = 30000
max_output_size = 1048576

# Extra directories sandboxed commands may write to (cwd and temp are always writable)
# writable_roots = ["~/.cache/pip"]

# Audit log (JSONL)
audit_log = true
# audit_log_dir = "."

# Extra risk rules (regular expressions, matched case-insensitively)
# high_risk_patterns = ["\\\\bterraform\\\\s+destroy\\\\b"]
# medium_risk_patterns = ["\\\\bdocker\\\\s+run\\\\b"]
'''
