"""File operations produced by the patch parsers and consumed by the applier.

A patch plan is an ordered list of CreateFile / DeleteFile / UpdateFile.
Paths are relative to the working directory the caller applies against.
"""

from dataclasses import dataclass, field


class PatchParseError(ValueError):
    """Patch text is malformed. Nothing has been applied."""

    def __init__(self, message: str, line_number: int | None = None):
        self.message = message
        self.line_number = line_number
        if line_number is not None:
            message = f"{message} (line {line_number})"
        super().__init__(message)


class PatchApplyError(Exception):
    """An operation could not be applied. The batch has been rolled back."""

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"{path}: {reason}")


@dataclass
class EditOperation:
    """Replace search with replace in one file's full text."""

    search: str
    replace: str
    replace_all: bool = False

    def __post_init__(self):
        if not self.search:
            raise ValueError("Search text must not be empty")


@dataclass
class Hunk:
    """A contiguous block: old_lines in the file become new_lines.

    old_lines includes the surrounding context; header is the text after
    "@@" and is kept only for error messages.
    """

    old_lines: list[str] = field(default_factory=list)
    new_lines: list[str] = field(default_factory=list)
    header: str = ""
    is_eof: bool = False


@dataclass
class CreateFile:
    path: str
    content: str


@dataclass
class DeleteFile:
    path: str


@dataclass
class UpdateFile:
    """Modify an existing file by hunks (context format) or edits (search/replace).

    move_to renames the file after the change is applied.
    """

    path: str
    hunks: list[Hunk] = field(default_factory=list)
    edits: list[EditOperation] = field(default_factory=list)
    move_to: str | None = None


PatchOperation = CreateFile | DeleteFile | UpdateFile


@dataclass
class PatchSummary:
    """Paths touched by a successfully applied plan."""

    added: list[str] = field(default_factory=list)
    modified: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)

    @property
    def changed_files(self) -> list[str]:
        return self.added + self.modified + self.deleted

    def to_dict(self) -> dict:
        return {"added": self.added, "modified": self.modified, "deleted": self.deleted}
