"""Parser for the context-block patch format.

    *** Begin Patch
    *** Add File: path/new.py
    +line one
    +line two
    *** Update File: path/old.py
    *** Move to: path/renamed.py
    @@ def handler():
     context line
    -removed line
    +added line
    *** End of File
    *** Delete File: path/gone.py
    *** End Patch

Add sections take "+" lines. Update sections take " " context, "-" and
"+" lines; a bare empty line is an empty context line. "@@" starts a new
hunk and its text is kept for error messages only. "*** End of File"
anchors the current hunk at the end of the file.

Pure: text in, list of operations out, or PatchParseError. The whole patch
is rejected on the first malformed line.
"""

from core.patch_ops import (
    CreateFile,
    DeleteFile,
    Hunk,
    PatchOperation,
    PatchParseError,
    UpdateFile,
)


PATCH_PREFIX = "*** Begin Patch"
PATCH_SUFFIX = "*** End Patch"
ADD_FILE_PREFIX = "*** Add File: "
DELETE_FILE_PREFIX = "*** Delete File: "
UPDATE_FILE_PREFIX = "*** Update File: "
MOVE_FILE_TO_PREFIX = "*** Move to: "
END_OF_FILE_PREFIX = "*** End of File"
HUNK_ADD_LINE_PREFIX = "+"


def is_context_patch(text: str) -> bool:
    """True when text carries the Begin/End Patch markers."""
    stripped = text.strip()
    return stripped.startswith(PATCH_PREFIX) and stripped.endswith(PATCH_SUFFIX)


def _section_header(line: str) -> bool:
    return line.startswith((ADD_FILE_PREFIX, DELETE_FILE_PREFIX, UPDATE_FILE_PREFIX))


def _path_from(line: str, prefix: str, line_number: int) -> str:
    path = line[len(prefix):].strip()
    if not path:
        raise PatchParseError(f"Missing path after '{prefix.strip()}'", line_number)
    return path


def parse_patch(text: str) -> list[PatchOperation]:
    """Parse a full Begin/End Patch document into a patch plan."""
    lines = [ln[:-1] if ln.endswith("\r") else ln for ln in text.strip().split("\n")]

    if (
        len(lines) < 2
        or lines[0].strip() != PATCH_PREFIX
        or lines[-1].strip() != PATCH_SUFFIX
    ):
        raise PatchParseError("Invalid patch format: Missing begin/end markers")

    ops: list[PatchOperation] = []
    # reported line numbers are 1-based: index + 1
    i = 1
    end = len(lines) - 1

    while i < end:
        line = lines[i]
        number = i + 1

        if line.startswith(ADD_FILE_PREFIX):
            path = _path_from(line, ADD_FILE_PREFIX, number)
            i += 1
            content = []
            pending_blank = 0  # bare empty lines, kept only if more content follows
            while i < end and not _section_header(lines[i]):
                body = lines[i]
                if body.startswith(HUNK_ADD_LINE_PREFIX):
                    content.extend([""] * pending_blank)
                    pending_blank = 0
                    content.append(body[1:])
                elif body == "":
                    pending_blank += 1
                else:
                    raise PatchParseError(
                        f"Invalid Add File line for {path}: every line must start with '+'",
                        i + 1,
                    )
                i += 1
            ops.append(CreateFile(path, "".join(c + "\n" for c in content)))
            continue

        if line.startswith(DELETE_FILE_PREFIX):
            ops.append(DeleteFile(_path_from(line, DELETE_FILE_PREFIX, number)))
            i += 1
            continue

        if line.startswith(UPDATE_FILE_PREFIX):
            path = _path_from(line, UPDATE_FILE_PREFIX, number)
            i += 1
            move_to = None
            if i < end and lines[i].startswith(MOVE_FILE_TO_PREFIX):
                move_to = _path_from(lines[i], MOVE_FILE_TO_PREFIX, i + 1)
                i += 1
            hunks, i = _parse_hunks(lines, i, end, path)
            if not hunks and move_to is None:
                raise PatchParseError(f"Update File section for {path} has no changes", number)
            ops.append(UpdateFile(path, hunks=hunks, move_to=move_to))
            continue

        if line.strip() == "":
            i += 1
            continue

        raise PatchParseError(f"Unknown line in patch: {line[:80]!r}", number)

    if not ops:
        raise PatchParseError("Patch contains no file operations")
    return ops


def _parse_hunks(lines: list[str], i: int, end: int, path: str) -> tuple[list[Hunk], int]:
    """Collect hunks for one Update File section; returns (hunks, next index)."""
    hunks: list[Hunk] = []
    current = Hunk()
    has_changes = False
    trailing_blank = 0  # bare empty lines at the end of the current hunk

    def flush():
        nonlocal current, has_changes, trailing_blank
        # Blank separator lines before the next section aren't context
        if trailing_blank and not current.is_eof:
            del current.old_lines[-trailing_blank:]
            del current.new_lines[-trailing_blank:]
        if current.old_lines or current.new_lines:
            if not has_changes:
                raise PatchParseError(f"Hunk in {path} has context but no changes")
            hunks.append(current)
        current = Hunk()
        has_changes = False
        trailing_blank = 0

    while i < end and not _section_header(lines[i]):
        line = lines[i]
        if line.startswith("@@"):
            flush()
            current.header = line[2:].strip()
        elif line.strip() == END_OF_FILE_PREFIX:
            current.is_eof = True
            flush()
        elif line.startswith("***"):
            raise PatchParseError(f"Unexpected marker in update for {path}: {line[:80]!r}", i + 1)
        elif line == "":
            current.old_lines.append("")
            current.new_lines.append("")
        elif line[0] == " ":
            current.old_lines.append(line[1:])
            current.new_lines.append(line[1:])
        elif line[0] == "-":
            current.old_lines.append(line[1:])
            has_changes = True
        elif line[0] == "+":
            current.new_lines.append(line[1:])
            has_changes = True
        else:
            raise PatchParseError(
                f"Invalid hunk line for {path}: lines must start with ' ', '-' or '+'",
                i + 1,
            )
        trailing_blank = trailing_blank + 1 if line == "" else 0
        i += 1

    flush()
    return hunks, i
