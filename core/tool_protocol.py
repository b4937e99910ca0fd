"""Tool protocol for riker.

The tool-call loop hands riker a tool name plus a JSON object of arguments
and gets back a flat JSON shape:

    {"output": "...", "metadata": {"exit_code": 0, "duration_seconds": 0.4}}

This module owns that wire shape (parsing shell arguments into an
ExecutionRequest, formatting and re-reading results) and the registry that
dispatches a call by name with a wall-clock timeout.
"""

import json
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeout

from core.command_adapter import PROMPT_TOKENS
from core.sandbox import ExecutionRequest, ExecutionResult


# ---------------------------------------------------------------------------
# Shell tool arguments
# ---------------------------------------------------------------------------

def parse_tool_call_arguments(raw_json: str, default_workdir: str | None = None) -> ExecutionRequest | None:
    """Parse a shell tool call's JSON arguments.

    Accepts {"cmd": [...] | "...", "workdir": "...", "timeout": ms};
    "command" is accepted in place of "cmd". Returns None when the arguments
    can't describe a runnable command.
    """
    try:
        args = json.loads(raw_json)
    except (json.JSONDecodeError, TypeError):
        return None
    if not isinstance(args, dict):
        return None

    cmd = args.get("cmd", args.get("command"))
    if isinstance(cmd, str):
        cmd = [cmd]
    if not isinstance(cmd, list) or not cmd:
        return None

    first = cmd[0]
    if not isinstance(first, str) or not first.strip() or first.strip() in PROMPT_TOKENS:
        return None

    timeout = args.get("timeout")
    if isinstance(timeout, bool) or not isinstance(timeout, int) or timeout <= 0:
        timeout = None

    workdir = args.get("workdir")
    if not isinstance(workdir, str) or not workdir:
        workdir = default_workdir

    return ExecutionRequest(
        command=tuple(cmd),
        working_directory=workdir,
        timeout_ms=timeout,
    )


# ---------------------------------------------------------------------------
# Result shaping
# ---------------------------------------------------------------------------

def exec_output(result: ExecutionResult, duration_s: float) -> dict:
    """Flat result for the model: stdout when there is any, otherwise stderr."""
    return {
        "output": result.stdout or result.stderr,
        "metadata": {
            "exit_code": result.exit_code,
            "duration_seconds": round(duration_s, 1),
        },
    }


def format_exec_output(result: ExecutionResult, duration_s: float) -> str:
    """exec_output() as JSON text."""
    return json.dumps(exec_output(result, duration_s))


def parse_tool_call_output(text: str) -> dict:
    """Read back a formatted result. Malformed text becomes a failed result."""
    try:
        data = json.loads(text)
        if isinstance(data, dict) and "output" in data:
            return {"output": data["output"], "metadata": data.get("metadata") or {}}
    except (json.JSONDecodeError, TypeError):
        pass
    return {
        "output": "Failed to parse JSON result",
        "metadata": {"exit_code": 1, "duration_seconds": 0},
    }


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

class ToolRegistry:
    """Registry for tool functions that the tool-call loop can invoke."""

    def __init__(self):
        self._tools: dict[str, dict] = {}

    def register_tool(self, name: str, func: callable, description: str) -> None:
        """Register a tool with the given name, function, and description."""
        if name in self._tools:
            raise ValueError(f"Tool '{name}' is already registered.")
        self._tools[name] = {"func": func, "description": description}

    def get_tool(self, name: str) -> dict | None:
        """Return tool info dict or None if not registered."""
        return self._tools.get(name)

    def list_tools(self) -> list[dict]:
        """Return list of registered tools with name and description."""
        return [
            {"name": n, "description": t["description"]}
            for n, t in self._tools.items()
        ]

    def execute_tool(self, name: str, arguments: str | dict, timeout_seconds: int = 30) -> dict:
        """Execute a registered tool by name.

        arguments is a JSON object (or its text); its keys become keyword
        arguments. Returns dict with keys: ok (bool), data or error (str),
        duration_ms (int).
        """
        start_time = time.time()

        if name not in self._tools:
            return {"ok": False, "error": f"Tool '{name}' is not registered.", "duration_ms": 0}

        try:
            kwargs = json.loads(arguments) if isinstance(arguments, str) else dict(arguments or {})
            if not isinstance(kwargs, dict):
                raise TypeError("tool arguments must be a JSON object")

            with ThreadPoolExecutor(max_workers=1) as executor:
                future = executor.submit(self._tools[name]["func"], **kwargs)
                result = future.result(timeout=timeout_seconds)

            duration_ms = int((time.time() - start_time) * 1000)
            return {"ok": True, "data": result, "duration_ms": duration_ms}

        except FuturesTimeout:
            duration_ms = int((time.time() - start_time) * 1000)
            return {"ok": False, "error": f"Tool '{name}' timed out after {timeout_seconds}s.", "duration_ms": duration_ms}
        except Exception as e:
            duration_ms = int((time.time() - start_time) * 1000)
            return {"ok": False, "error": f"{type(e).__name__}: {e}", "duration_ms": duration_ms}

