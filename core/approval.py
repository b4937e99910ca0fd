"""Approval gate for riker: decides whether a command or patch may run.

Three policies:
  - "suggest": ask the user before every command and patch (default)
  - "auto-edit": apply patches inside the writable roots without asking,
    ask before every command
  - "full-auto": run low/medium risk commands and in-root patches without
    asking; high risk still asks

Whatever the policy, a command the user approved "always" this session runs
again without a prompt, and a high-risk command never runs unattended.

A decision is one of Approved, ApprovedForSession, Denied, DeniedAndAbort.
DeniedAndAbort is returned, not raised: its aborts_turn flag tells the
caller to stop the whole agent turn.
"""

import os
import re
import shlex
import unicodedata
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Callable

from core.audit_log import get_audit_log
from core.sandbox import is_within


# ============================================================
# Policies, risk levels, decisions
# ============================================================

class ApprovalPolicy(Enum):
    SUGGEST = "suggest"
    AUTO_EDIT = "auto-edit"
    FULL_AUTO = "full-auto"

    @classmethod
    def parse(cls, name: "str | ApprovalPolicy") -> "ApprovalPolicy":
        if isinstance(name, cls):
            return name
        key = (name or "").strip().lower().replace("_", "-")
        key = _POLICY_ALIASES.get(key, key)
        try:
            return cls(key)
        except ValueError:
            valid = ", ".join(p.value for p in cls)
            raise ValueError(f"Invalid approval policy: {name!r} (expected one of {valid})")


_POLICY_ALIASES = {
    "always-ask": "suggest",
    "ask": "suggest",
    "auto-approve-edits": "auto-edit",
    "auto-approve-edits-ask-commands": "auto-edit",
    "auto": "full-auto",
}


class RiskLevel(IntEnum):
    LOW = 0
    MEDIUM = 1
    HIGH = 2

    @property
    def label(self) -> str:
        return self.name.lower()


class ApprovalDecision:
    """Base for the four decision variants."""

    approved = False
    aborts_turn = False


@dataclass(frozen=True)
class Approved(ApprovalDecision):
    # True when policy granted it without asking anyone
    automatic: bool = False

    approved = True


@dataclass(frozen=True)
class ApprovedForSession(ApprovalDecision):
    approved = True


@dataclass(frozen=True)
class Denied(ApprovalDecision):
    reason: str = "Denied by user"


@dataclass(frozen=True)
class DeniedAndAbort(ApprovalDecision):
    reason: str = "Denied by user, turn aborted"

    aborts_turn = True


def decision_name(decision: ApprovalDecision) -> str:
    return type(decision).__name__


# ============================================================
# Risk rules
# ============================================================

@dataclass
class RiskRule:
    """A regex over the command text that marks it with a risk level."""

    pattern: str
    level: RiskLevel
    message: str
    regex: re.Pattern = field(init=False, repr=False)

    def __post_init__(self):
        self.regex = re.compile(self.pattern, re.IGNORECASE)


# Programs that can make irreversible changes; high with a destructive flag
DANGEROUS_PROGRAMS = {
    "rm", "del", "rmdir", "rd", "format", "fdisk", "mkfs", "dd",
    "sudo", "runas", "powershell", "pwsh", "cmd", "regedit", "reg",
    "shred", "wipefs",
}

DESTRUCTIVE_FLAGS = {"-rf", "-fr", "-r", "-f", "-R", "--force", "--recursive", "/f", "/s", "/q"}

_HIGH_RISK_PATTERNS = [
    # --- Destructive file operations ---
    (r'\brm\s+(-\w*f\w*\s+)*-\w*r', "Recursive deletion"),
    (r'\brm\s+(-\w+\s+)*(/|~|\$HOME)(\s|$)', "Deletes a root or home directory"),
    (r'\bformat\s+[A-Za-z]:', "Formats a drive"),
    (r'\bmkfs\b', "Creates a filesystem"),
    (r'\bdd\s+.*\bof=/', "Writes raw data to a device"),
    (r':\(\)\s*\{\s*:\|:&\s*\}', "Fork bomb"),
    (r'>\s*/dev/(sd|nvme|disk)', "Writes to a block device"),
    # --- Fetch-and-execute ---
    (r'\b(curl|wget)\b.*\|\s*(sudo\s+)?(sh|bash|zsh|python3?|powershell)\b', "Downloads and executes remote code"),
    (r'\bInvoke-WebRequest\b.*\|\s*(iex|Invoke-Expression)\b', "Downloads and executes remote code"),
    # --- Privilege escalation ---
    (r'\bsudo\b', "Runs with elevated privileges"),
    (r'\brunas\b', "Runs with elevated privileges"),
    (r'\bchmod\s+(-\w+\s+)*777\b', "Makes files world-writable"),
    (r'\bchmod\s+(-\w+\s+)*[ugoa]*\+s\b', "Sets the setuid bit"),
    (r'\bchown\s+(-\w+\s+)*root\b', "Changes ownership to root"),
    # --- System configuration ---
    (r'\breg\s+(add|delete)\b', "Modifies the Windows registry"),
    (r'\bgit\s+config\s+--(global|system)\b', "Changes global git configuration"),
    (r'\bgit\s+push\s+.*(--force|-f)\b', "Force-pushes over remote history"),
    (r'\bgit\s+(reset\s+--hard|clean\s+-\w*f)', "Discards uncommitted work"),
    # --- Shutdown/reboot ---
    (r'\b(shutdown|reboot|halt|poweroff)\b', "Shuts down or reboots the machine"),
    (r'\binit\s+0\b', "Shuts down the machine"),
]

_MEDIUM_RISK_PATTERNS = [
    (r'\b(curl|wget)\b', "Makes network requests"),
    (r'\bgit\s+(push|pull|fetch|clone)\b', "Talks to a git remote"),
    (r'\b(pip3?|npm|yarn|pnpm|cargo|gem|apt(-get)?|brew)\s+(install|add|remove|uninstall)\b', "Installs or removes packages"),
    (r'\b(mv|move)\b', "Moves or renames files"),
    (r'\b(ssh|scp|sftp|rsync)\b', "Connects to a remote host"),
    (r'\b(kill|pkill|killall)\b', "Terminates processes"),
]


def default_risk_rules() -> list[RiskRule]:
    """Built-in rules. Callers extend the returned list; it's a fresh copy."""
    rules = [RiskRule(p, RiskLevel.HIGH, m) for p, m in _HIGH_RISK_PATTERNS]
    rules += [RiskRule(p, RiskLevel.MEDIUM, m) for p, m in _MEDIUM_RISK_PATTERNS]
    return rules


def rules_from_config(config: dict) -> list[RiskRule]:
    """Default rules plus any high/medium patterns from the config file."""
    rules = default_risk_rules()
    for pattern in config.get("high_risk_patterns") or []:
        rules.append(RiskRule(pattern, RiskLevel.HIGH, f"Matches configured high-risk pattern: {pattern}"))
    for pattern in config.get("medium_risk_patterns") or []:
        rules.append(RiskRule(pattern, RiskLevel.MEDIUM, f"Matches configured pattern: {pattern}"))
    return rules


def _normalize_command(command: str) -> str:
    """Normalize command text before pattern matching.

    Strips zero-width characters and homoglyphs, collapses whitespace.
    """
    command = command.replace('\\\n', '')
    command = re.sub(r'[\u200b-\u200f\u2028-\u202f\u2060\ufeff]', '', command)
    command = unicodedata.normalize('NFKD', command)
    command = command.encode('ascii', errors='ignore').decode('ascii')
    return re.sub(r'\s+', ' ', command).strip()


def _tokens(command: list[str]) -> list[str]:
    """argv view of command; a single shell string is split first."""
    if len(command) == 1:
        try:
            return shlex.split(command[0])
        except ValueError:
            return command[0].split()
    return list(command)


def _program_name(token: str) -> str:
    name = os.path.basename(token.replace("\\", "/")).lower()
    for suffix in (".exe", ".cmd", ".bat"):
        if name.endswith(suffix):
            return name[: -len(suffix)]
    return name


def _has_destructive_flag(args: list[str]) -> bool:
    for arg in args:
        if arg in DESTRUCTIVE_FLAGS or arg.lower() in DESTRUCTIVE_FLAGS:
            return True
        # clustered short flags: -rfv, -Rf
        if re.fullmatch(r'-[A-Za-z]*[rRf][A-Za-z]*', arg):
            return True
    return False


def classify_risk(command: list[str], rules: list[RiskRule] | None = None) -> tuple[RiskLevel, list[str]]:
    """Classify a command as low, medium, or high risk.

    Returns (level, issues) where issues are human-readable reasons, in the
    order they were detected.
    """
    rules = default_risk_rules() if rules is None else rules
    level = RiskLevel.LOW
    issues: list[str] = []

    tokens = _tokens(command)
    if tokens:
        program = _program_name(tokens[0])
        if program in DANGEROUS_PROGRAMS:
            if _has_destructive_flag(tokens[1:]):
                level = RiskLevel.HIGH
                issues.append(f"Potentially Dangerous Command: '{program}' with destructive flags")
            else:
                level = max(level, RiskLevel.MEDIUM)
                issues.append(f"Potentially Dangerous Command: '{program}' can make irreversible changes")

    text = " ".join(command)
    normalized = _normalize_command(text)
    for rule in rules:
        if rule.regex.search(normalized) or rule.regex.search(text):
            level = max(level, rule.level)
            if rule.message not in issues:
                issues.append(rule.message)

    return level, issues


def estimate_duration(command: list[str]) -> str:
    """Rough runtime hint shown next to the approval prompt."""
    tokens = _tokens(command)
    if not tokens:
        return "< 1s"
    program = _program_name(tokens[0])
    if program in ("ls", "dir", "pwd", "cd", "echo", "type", "cat"):
        return "< 1s"
    if program in ("cp", "copy", "mv", "move", "mkdir", "md", "rm", "del"):
        return "1-5s"
    if program in ("npm", "yarn", "pip", "pip3", "git", "node", "python", "python3"):
        if "install" in tokens or "update" in tokens:
            return "30s-5m"
        return "5-30s"
    return "Unknown"


# ============================================================
# Session memory
# ============================================================

class ApprovedCommands:
    """Commands the user approved for the rest of this run.

    Keyed by the exact token sequence. Append-only: entries are never
    evicted. Owned by whoever drives the agent run and handed to each gate.
    """

    def __init__(self):
        self._commands: set[tuple[str, ...]] = set()

    def add(self, command: list[str] | tuple[str, ...]) -> None:
        self._commands.add(tuple(command))

    def __contains__(self, command) -> bool:
        return tuple(command) in self._commands

    def __len__(self) -> int:
        return len(self._commands)


# ============================================================
# Interactive confirmation
# ============================================================

@dataclass
class ApprovalPrompt:
    """What the human sees when asked to confirm."""

    kind: str            # "command" or "patch"
    summary: str         # the literal command line, or the touched paths
    risk: RiskLevel
    issues: list[str] = field(default_factory=list)
    duration: str = ""


_RISK_BADGES = {
    RiskLevel.LOW: "[low risk]",
    RiskLevel.MEDIUM: "[MEDIUM RISK]",
    RiskLevel.HIGH: "[!! HIGH RISK !!]",
}


def format_prompt(prompt: ApprovalPrompt) -> str:
    lines = [f"\n  {prompt.kind.capitalize()}: {prompt.summary}"]
    lines.append(f"  Risk: {_RISK_BADGES[prompt.risk]}")
    for issue in prompt.issues:
        lines.append(f"    - {issue}")
    if prompt.duration:
        lines.append(f"  Estimated duration: {prompt.duration}")
    return "\n".join(lines)


def prompt_for_decision(prompt: ApprovalPrompt) -> ApprovalDecision:
    """Ask on the terminal. y = once, a = always this session, q = stop the turn."""
    print(format_prompt(prompt))
    try:
        response = input("  Allow? [y/n/a(lways)/q(uit)] ").strip().lower()
    except EOFError:
        return Denied("No answer (stdin closed)")
    except KeyboardInterrupt:
        return DeniedAndAbort("Interrupted at approval prompt")

    if response in ("y", "yes"):
        return Approved()
    if response in ("a", "always"):
        return ApprovedForSession()
    if response in ("q", "quit", "stop"):
        return DeniedAndAbort("User chose to stop")
    return Denied("User declined")


# ============================================================
# Gate
# ============================================================

class ApprovalGate:
    """Consulted before any command runs or any patch is applied."""

    def __init__(
        self,
        policy: ApprovalPolicy | str = ApprovalPolicy.SUGGEST,
        session: ApprovedCommands | None = None,
        confirm: Callable[[ApprovalPrompt], ApprovalDecision] | None = None,
        rules: list[RiskRule] | None = None,
    ):
        """Initialize the gate.

        Args:
            policy: How much confirmation is required.
            session: Shared "approved for session" memory. A fresh one is
                created when omitted.
            confirm: Asks a human. None means nobody is available to ask,
                so anything needing confirmation is denied.
            rules: Risk rules; defaults to default_risk_rules().
        """
        self.policy = ApprovalPolicy.parse(policy)
        self.session = session if session is not None else ApprovedCommands()
        self.confirm = confirm
        self.rules = default_risk_rules() if rules is None else rules

    def review_command(self, command: list[str]) -> ApprovalDecision:
        """Decide whether command may run."""
        command = list(command)
        summary = shlex.join(command) if len(command) > 1 else command[0]

        if command in self.session:
            decision = ApprovedForSession()
            self._log("command", summary, decision, RiskLevel.LOW, prompted=False)
            return decision

        risk, issues = classify_risk(command, self.rules)

        if self.policy is ApprovalPolicy.FULL_AUTO and risk < RiskLevel.HIGH:
            decision = Approved(automatic=True)
            self._log("command", summary, decision, risk, prompted=False)
            return decision

        prompt = ApprovalPrompt("command", summary, risk, issues, estimate_duration(command))
        decision = self._ask(prompt)
        if isinstance(decision, ApprovedForSession):
            self.session.add(command)
        self._log("command", summary, decision, risk, prompted=self.confirm is not None)
        return decision

    def review_patch(self, paths: list[str], roots: list[str]) -> ApprovalDecision:
        """Decide whether a patch touching paths may be applied.

        paths are absolute (already joined onto the working directory).
        """
        outside = [p for p in paths if not is_within(p, roots)]
        risk = RiskLevel.HIGH if outside else RiskLevel.LOW
        issues = [f"Writes outside the writable roots: {p}" for p in outside]
        summary = ", ".join(paths) if paths else "(no files)"

        if self.policy is not ApprovalPolicy.SUGGEST and not outside:
            decision = Approved(automatic=True)
            self._log("patch", summary, decision, risk, prompted=False)
            return decision

        decision = self._ask(ApprovalPrompt("patch", summary, risk, issues))
        self._log("patch", summary, decision, risk, prompted=self.confirm is not None)
        return decision

    def _ask(self, prompt: ApprovalPrompt) -> ApprovalDecision:
        if self.confirm is None:
            return Denied(f"{prompt.kind.capitalize()} requires approval and no approver is available")
        return self.confirm(prompt)

    def _log(self, kind: str, summary: str, decision: ApprovalDecision,
             risk: RiskLevel, prompted: bool) -> None:
        audit = get_audit_log()
        if audit is not None:
            audit.approval(kind, summary, decision_name(decision), risk.label,
                           self.policy.value, prompted)
