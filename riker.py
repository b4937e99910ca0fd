"""riker: the execution and file-mutation core of a terminal coding agent.

Runs commands under an OS sandbox and applies model-written patches
atomically, with an approval gate in front of both.

Usage:
    riker [OPTIONS] exec [--timeout MS] [--background] -- CMD [ARGS...]
    riker [OPTIONS] apply-patch [FILE|-]
    riker [OPTIONS] edit PATH [FILE|-]
    riker [OPTIONS] tool NAME [ARGS_JSON|-]

OPTIONS (--workdir, --sandbox, --writable-root, --approval-policy, ...)
go before the subcommand: riker --workdir DIR exec -- ls

Run 'riker --help' for all options.
"""

import argparse
import json
import os
import sys

# Add parent directory to path so imports work when run directly
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from core.approval import ApprovalGate, ApprovedCommands, prompt_for_decision, rules_from_config
from core.audit_log import configure_audit_log
from core.config import DEFAULTS, generate_sample_config, load_config, merge_cli_args
from core.sandbox import ExecutionRequest, SandboxKind, SandboxUnavailableError, select_sandbox_kind
from core.tool_protocol import ToolRegistry, parse_tool_call_arguments
from tools.apply_patch import apply_patch
from tools.exec_command import handle_exec_command
from tools.file_edit import edit, multi_edit_tool


EXIT_OK = 0
EXIT_FAILED = 1
EXIT_ABORTED = 2


def build_registry(gate: ApprovalGate, config: dict, workdir: str) -> ToolRegistry:
    """Create the tool registry the tool-call loop dispatches into."""
    reg = ToolRegistry()

    def shell(**arguments) -> dict:
        request = parse_tool_call_arguments(json.dumps(arguments), default_workdir=workdir)
        if request is None:
            return {
                "output": 'Invalid shell arguments: expected {"cmd": [...], "workdir"?, "timeout"?}',
                "metadata": {"exit_code": 1, "duration_seconds": 0},
            }
        if config.get("writable_roots"):
            request = ExecutionRequest(
                command=request.command,
                working_directory=request.working_directory,
                timeout_ms=request.timeout_ms,
                additional_writable_roots=tuple(config["writable_roots"]),
            )
        return handle_exec_command(request, gate, config)

    def patch(input: str) -> dict:
        return apply_patch(input, workdir, gate, config.get("writable_roots"))

    def edit_file(path: str, diff: str) -> dict:
        return edit(path, diff, workdir, gate)

    def edit_many(edits: list) -> dict:
        return multi_edit_tool(edits, workdir, gate)

    reg.register_tool("shell", shell, "Run a command (argv list) in the sandbox")
    reg.register_tool("apply_patch", patch, "Apply a *** Begin Patch / *** End Patch document")
    reg.register_tool("edit", edit_file, "Apply SEARCH/REPLACE blocks to one file")
    reg.register_tool("multi_edit", edit_many, "Apply exact string edits across files")
    return reg


def _read_input(source: str | None) -> str:
    if source in (None, "-"):
        return sys.stdin.read()
    with open(source, "r", encoding="utf-8") as f:
        return f.read()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="riker",
        description="riker: sandboxed exec and atomic patching for coding agents",
        epilog="Options go before the subcommand, e.g.\n"
               "  riker --workdir DIR --sandbox none exec -- ls -la",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--approval-policy", default=None,
        help="suggest | auto-edit | full-auto (default: suggest)",
    )
    parser.add_argument(
        "--sandbox", default=None,
        choices=["auto"] + [k.value for k in SandboxKind],
        help="Sandbox for auto-approved commands (default: auto)",
    )
    parser.add_argument("--workdir", default=None, help="Working directory (default: cwd)")
    parser.add_argument(
        "--writable-root", action="append", default=None, metavar="DIR",
        help="Extra directory sandboxed commands may write to (repeatable)",
    )
    parser.add_argument("--config", default=None, help="Path to config file (default: .riker.toml)")
    parser.add_argument("--no-config", action="store_true", help="Ignore config files")
    parser.add_argument("--init-config", action="store_true", help="Write a sample .riker.toml and exit")
    parser.add_argument("--no-audit-log", action="store_true", help="Don't write the JSONL audit log")
    parser.add_argument("--audit-log-dir", default=None, help="Directory for audit logs (default: workdir)")

    sub = parser.add_subparsers(dest="command")

    p_exec = sub.add_parser("exec", help="Run one command through the approval gate and sandbox")
    p_exec.add_argument("--timeout", type=int, default=None, help="Timeout in milliseconds (default: 30000)")
    p_exec.add_argument("--background", action="store_true", help="Detach and return the PID at once")
    p_exec.add_argument("cmd", nargs=argparse.REMAINDER, help="Command and arguments (after --)")

    p_patch = sub.add_parser("apply-patch", help="Apply a context-block patch")
    p_patch.add_argument("file", nargs="?", default="-", help="Patch file, or - for stdin")

    p_edit = sub.add_parser("edit", help="Apply SEARCH/REPLACE blocks to a file")
    p_edit.add_argument("path", help="File to edit")
    p_edit.add_argument("file", nargs="?", default="-", help="Blocks file, or - for stdin")

    p_tool = sub.add_parser("tool", help="Dispatch one tool call by name")
    p_tool.add_argument("name", help="shell | apply_patch | edit | multi_edit")
    p_tool.add_argument("arguments", nargs="?", default="-", help="JSON arguments, or - for stdin")

    return parser


def _cmd_exec(args, gate: ApprovalGate, config: dict, workdir: str) -> int:
    cmd = list(args.cmd)
    if cmd and cmd[0] == "--":
        cmd = cmd[1:]
    if not cmd:
        print("Error: no command given (usage: riker exec -- CMD [ARGS...])", file=sys.stderr)
        return EXIT_FAILED

    try:
        request = ExecutionRequest(
            command=tuple(cmd),
            working_directory=workdir,
            timeout_ms=config["timeout_ms"],
            additional_writable_roots=tuple(config.get("writable_roots") or ()),
            run_in_background=args.background,
        )
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FAILED
    result = handle_exec_command(request, gate, config)
    print(json.dumps(result, indent=2))

    if result.get("aborts_turn"):
        return EXIT_ABORTED
    if result["metadata"].get("exit_code", 1) != 0:
        return EXIT_FAILED
    return EXIT_OK


def _report(result: dict) -> int:
    if result.get("ok"):
        if "message" in result:
            print(result["message"])
        else:
            for key, mark in (("added", "A"), ("modified", "M"), ("deleted", "D")):
                for path in result.get(key, []):
                    print(f"{mark} {path}")
            print("Done!")
        return EXIT_OK
    print(f"Error: {result.get('error')}", file=sys.stderr)
    return EXIT_ABORTED if result.get("aborts_turn") else EXIT_FAILED


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    # Generate sample config and exit
    if args.init_config:
        with open(".riker.toml", "w", encoding="utf-8") as f:
            f.write(generate_sample_config())
        print("Created .riker.toml with default settings.")
        return EXIT_OK

    if not args.command:
        parser.print_help()
        return EXIT_FAILED

    # Load configuration: DEFAULTS -> config file -> CLI args
    if not args.no_config:
        config = load_config(args.config)
    else:
        config = dict(DEFAULTS)
    config = merge_cli_args(config, args)

    config_file = config.get("_config_file")
    if config_file:
        print(f"Config: {config_file}", file=sys.stderr)

    workdir = os.path.realpath(config["cwd"] or os.getcwd())
    if not os.path.isdir(workdir):
        print(f"Error: working directory does not exist: {workdir}", file=sys.stderr)
        return EXIT_FAILED

    # Resolve the sandbox once for the whole run
    try:
        config["sandbox"] = select_sandbox_kind(config["sandbox"])
    except (SandboxUnavailableError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FAILED

    try:
        gate = ApprovalGate(
            config["approval_policy"],
            session=ApprovedCommands(),
            confirm=prompt_for_decision if sys.stdin.isatty() else None,
            rules=rules_from_config(config),
        )
    except (ValueError, TypeError) as e:  # bad policy name or risk pattern
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FAILED

    audit = None
    if config["audit_log"]:
        audit = configure_audit_log(config["audit_log_dir"] or workdir)

    try:
        if args.command == "exec":
            return _cmd_exec(args, gate, config, workdir)

        if args.command == "apply-patch":
            text = _read_input(args.file)
            return _report(apply_patch(text, workdir, gate, config.get("writable_roots")))

        if args.command == "edit":
            diff = _read_input(args.file)
            return _report(edit(args.path, diff, workdir, gate))

        if args.command == "tool":
            registry = build_registry(gate, config, workdir)
            raw = _read_input(args.arguments) if args.arguments == "-" else args.arguments
            timeout_s = max(30, config["timeout_ms"] // 1000 + 5)
            result = registry.execute_tool(args.name, raw, timeout_seconds=timeout_s)
            print(json.dumps(result, indent=2))
            if not result["ok"]:
                return EXIT_FAILED
            data = result["data"]
            if isinstance(data, dict) and data.get("aborts_turn"):
                return EXIT_ABORTED
            return EXIT_OK

        parser.print_help()
        return EXIT_FAILED
    except OSError as e:
        if audit is not None:
            audit.error("cli", str(e))
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FAILED
    finally:
        if audit is not None:
            audit.close()


if __name__ == "__main__":
    sys.exit(main())
