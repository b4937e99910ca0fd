"""Structured audit logging for riker.

Logs every execution, approval decision, patch application and rollback to
a JSONL (JSON Lines) file. Each line is a self-contained JSON object.

Log files are written as .riker-audit-YYYYMMDD-HHMMSS.jsonl in the
configured directory. Nothing is logged until configure_audit_log() is
called; get_audit_log() returns None until then.
"""

import json
import os
import time
from datetime import datetime, timezone


class AuditLog:
    """Append-only structured logger for session events."""

    def __init__(self, log_dir: str = "."):
        """Initialize audit logger.

        Args:
            log_dir: Directory to write log files. Defaults to cwd.
        """
        self.log_dir = log_dir
        ts = datetime.now().strftime("%Y%m%d-%H%M%S")
        self.log_path = os.path.join(log_dir, f".riker-audit-{ts}.jsonl")
        self._session_id = ts
        self._event_count = 0
        self._start_time = time.time()
        self._file = None

    def _ensure_open(self):
        """Lazily open the log file on first write."""
        if self._file is None:
            os.makedirs(self.log_dir, exist_ok=True)
            self._file = open(self.log_path, "a", encoding="utf-8")

    def _write(self, event_type: str, data: dict) -> None:
        """Write a single event to the log."""
        self._ensure_open()
        self._event_count += 1
        entry = {
            "seq": self._event_count,
            "ts": datetime.now(timezone.utc).isoformat(),
            "elapsed_s": round(time.time() - self._start_time, 2),
            "event": event_type,
            **data,
        }
        self._file.write(json.dumps(entry, separators=(",", ":")) + "\n")
        self._file.flush()

    def exec(self, command: list[str], sandbox: str, exit_code: int,
             duration_ms: int, background: bool = False, timed_out: bool = False) -> None:
        """Log a command execution."""
        self._write("exec", {
            "command": [c[:200] for c in command[:50]],
            "sandbox": sandbox,
            "exit_code": exit_code,
            "duration_ms": duration_ms,
            "background": background,
            "timed_out": timed_out,
        })

    def approval(self, kind: str, subject: str, decision: str, risk: str,
                 policy: str, prompted: bool) -> None:
        """Log an approval decision."""
        self._write("approval", {
            "kind": kind,
            "subject": subject[:500],
            "decision": decision,
            "risk": risk,
            "policy": policy,
            "prompted": prompted,
        })

    def patch_apply(self, fmt: str, ok: bool, added: int = 0, modified: int = 0,
                    deleted: int = 0, error: str = "") -> None:
        """Log a patch application (context-block or search/replace)."""
        self._write("patch_apply", {
            "format": fmt,
            "ok": ok,
            "added": added,
            "modified": modified,
            "deleted": deleted,
            "error": error[:300] if error else "",
        })

    def rollback(self, paths: list[str], reason: str) -> None:
        """Log a batch rollback after a failed patch."""
        self._write("rollback", {
            "paths": paths[:100],
            "reason": reason[:300],
        })

    def sandbox_denied(self, reason: str, command: list[str]) -> None:
        """Log a request the sandbox layer refused to run."""
        self._write("sandbox_denied", {
            "reason": reason[:300],
            "command": " ".join(command)[:200],
        })

    def error(self, source: str, message: str) -> None:
        """Log an error."""
        self._write("error", {
            "source": source,
            "message": message[:500],
        })

    def close(self) -> None:
        """Flush and close the log file."""
        if self._file is not None:
            self._file.flush()
            self._file.close()
            self._file = None

    @property
    def event_count(self) -> int:
        return self._event_count

    @property
    def session_id(self) -> str:
        return self._session_id


# ============================================================
# Module-level instance shared by the exec and patch layers
# ============================================================

_audit_log: AuditLog | None = None


def get_audit_log() -> AuditLog | None:
    """Return the configured audit log, or None when logging is off."""
    return _audit_log


def configure_audit_log(log_dir: str | None) -> AuditLog | None:
    """Install (or, with None, remove) the process-wide audit log."""
    global _audit_log
    if _audit_log is not None:
        _audit_log.close()
    _audit_log = AuditLog(log_dir) if log_dir is not None else None
    return _audit_log
