"""Parser for SEARCH/REPLACE edit blocks.

    ------- SEARCH
    exact text currently in the file
    =======
    text to put in its place
    +++++++ REPLACE

The legacy form with <<<<<<< SEARCH / ======= / >>>>>>> REPLACE is also
accepted. Any run of three or more marker characters works.

Search text must match the file exactly, whitespace included. Parsing is
pure and rejects the whole input on a malformed or unterminated block.
"""

import re

from core.patch_ops import EditOperation, PatchParseError


_SEARCH_START_RE = re.compile(r'^(-{3,}|<{3,}) SEARCH$')
_DIVIDER_RE = re.compile(r'^={3,}$')
_REPLACE_END_RE = re.compile(r'^(\+{3,}|>{3,}) REPLACE$')


def is_search_replace(text: str) -> bool:
    """True when text contains at least one SEARCH marker line."""
    return any(_SEARCH_START_RE.match(line.rstrip("\r")) for line in text.split("\n"))


def parse_search_replace(text: str, replace_all: bool = False) -> list[EditOperation]:
    """Parse SEARCH/REPLACE blocks into edit operations, in order.

    Args:
        text: The diff text.
        replace_all: Applied to every block; when False each search text
            must occur exactly once in the target file.

    Raises:
        PatchParseError: on a marker out of sequence, an unterminated block,
            an empty search section, or when no blocks are present.
    """
    edits: list[EditOperation] = []
    state = "none"  # none -> search -> replace -> none
    search_text = ""
    body: list[str] = []

    for number, raw in enumerate(text.split("\n"), start=1):
        marker = raw.rstrip("\r")

        if _SEARCH_START_RE.match(marker):
            if state != "none":
                raise PatchParseError("Unexpected SEARCH block start - previous block not completed", number)
            state = "search"
            body = []
            continue

        if _DIVIDER_RE.match(marker):
            if state != "search":
                raise PatchParseError("Unexpected ======= without preceding SEARCH block", number)
            search_text = "\n".join(body)
            if not search_text:
                raise PatchParseError("SEARCH block is empty", number)
            state = "replace"
            body = []
            continue

        if _REPLACE_END_RE.match(marker):
            if state != "replace":
                raise PatchParseError("Unexpected REPLACE block end without preceding content", number)
            edits.append(EditOperation(search_text, "\n".join(body), replace_all))
            state = "none"
            body = []
            continue

        if state != "none":
            body.append(raw)

    if state != "none":
        raise PatchParseError("Incomplete SEARCH/REPLACE block - missing closing marker")
    if not edits:
        raise PatchParseError("No SEARCH/REPLACE blocks found in diff content")
    return edits
