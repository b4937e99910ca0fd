"""Tests for the patch parsers, the atomic applier and the edit tools.

Run with: python -m pytest tests/test_patch.py -v
"""

import os
import shutil
import sys
import tempfile

# Add parent to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.approval import ApprovalGate
from core.file_access import DiskFileAccess, MemoryFileAccess
from core.patch_applier import apply_plan, find_block
from core.patch_context import is_context_patch, parse_patch
from core.patch_ops import (
    CreateFile,
    DeleteFile,
    EditOperation,
    PatchApplyError,
    PatchParseError,
    UpdateFile,
)
from core.patch_search_replace import is_search_replace, parse_search_replace
from tools.apply_patch import apply_patch, process_patch
from tools.file_edit import apply_search_replace, edit, multi_edit


# ============================================================
# Fixtures
# ============================================================

def make_tmpdir():
    return tempfile.mkdtemp(prefix="riker_test_")


def patch(*body):
    return "\n".join(["*** Begin Patch", *body, "*** End Patch"]) + "\n"


def sr_block(search, replace, legacy=False):
    if legacy:
        return f"<<<<<<< SEARCH\n{search}\n=======\n{replace}\n>>>>>>> REPLACE\n"
    return f"------- SEARCH\n{search}\n=======\n{replace}\n+++++++ REPLACE\n"


def process(text, fs):
    return process_patch(text, fs.open, fs.write, fs.remove)


# ============================================================
# Context-block parser
# ============================================================

def test_parse_add_update_delete():
    ops = parse_patch(patch(
        "*** Add File: hello.txt",
        "+Hello",
        "+World",
        "*** Update File: src/app.py",
        "@@ def main():",
        ' print("a")',
        '-print("b")',
        '+print("c")',
        "*** Delete File: old.txt",
    ))
    assert len(ops) == 3
    assert ops[0] == CreateFile("hello.txt", "Hello\nWorld\n")
    assert isinstance(ops[1], UpdateFile)
    hunk = ops[1].hunks[0]
    assert hunk.header == "def main():"
    assert hunk.old_lines == ['print("a")', 'print("b")']
    assert hunk.new_lines == ['print("a")', 'print("c")']
    assert ops[2] == DeleteFile("old.txt")


def test_parse_detects_format():
    assert is_context_patch(patch("*** Delete File: a.txt"))
    assert not is_context_patch("just some text")
    assert is_search_replace(sr_block("a", "b"))
    assert not is_search_replace(patch("*** Delete File: a.txt"))


def test_parse_missing_markers():
    try:
        parse_patch("*** Add File: a.txt\n+x\n")
        assert False, "Should have raised PatchParseError"
    except PatchParseError as e:
        assert "Missing begin/end markers" in str(e)


def test_parse_missing_end_marker():
    try:
        parse_patch("*** Begin Patch\n*** Delete File: a.txt\n")
        assert False, "Should have raised PatchParseError"
    except PatchParseError as e:
        assert "Missing begin/end markers" in str(e)


def test_parse_bad_hunk_line_reports_line_number():
    text = patch(
        "*** Update File: a.txt",
        "@@",
        "-old",
        "?new",
    )
    try:
        parse_patch(text)
        assert False, "Should have raised PatchParseError"
    except PatchParseError as e:
        assert e.line_number == 5
        assert "(line 5)" in str(e)


def test_parse_context_without_changes():
    try:
        parse_patch(patch("*** Update File: a.txt", " unchanged"))
        assert False, "Should have raised PatchParseError"
    except PatchParseError as e:
        assert "no changes" in str(e)


def test_parse_add_line_without_plus():
    try:
        parse_patch(patch("*** Add File: a.txt", "no plus"))
        assert False, "Should have raised PatchParseError"
    except PatchParseError as e:
        assert "must start with '+'" in str(e)


def test_parse_move_and_end_of_file():
    ops = parse_patch(patch(
        "*** Update File: a.txt",
        "*** Move to: b.txt",
        "@@",
        "-x",
        "+z",
        "*** End of File",
    ))
    assert ops[0].move_to == "b.txt"
    assert ops[0].hunks[0].is_eof


def test_parse_move_only():
    ops = parse_patch(patch("*** Update File: a.txt", "*** Move to: b.txt"))
    assert ops == [UpdateFile("a.txt", move_to="b.txt")]


def test_parse_nothing_inside_markers():
    try:
        parse_patch("*** Begin Patch\n*** End Patch")
        assert False, "Should have raised PatchParseError"
    except PatchParseError as e:
        assert "no file operations" in str(e)


# ============================================================
# Search/replace parser
# ============================================================

def test_sr_parse_single_block():
    edits = parse_search_replace(sr_block("old line", "new line"))
    assert edits == [EditOperation("old line", "new line")]


def test_sr_parse_legacy_markers():
    edits = parse_search_replace(sr_block("a", "b", legacy=True) + sr_block("c", "d", legacy=True))
    assert [(e.search, e.replace) for e in edits] == [("a", "b"), ("c", "d")]


def test_sr_parse_keeps_whitespace():
    edits = parse_search_replace(sr_block("    indented  ", "\tTabbed"))
    assert edits[0].search == "    indented  "
    assert edits[0].replace == "\tTabbed"


def test_sr_parse_empty_replace_deletes():
    edits = parse_search_replace("------- SEARCH\ngone\n=======\n+++++++ REPLACE\n")
    assert edits[0].replace == ""


def test_sr_parse_unterminated():
    try:
        parse_search_replace("------- SEARCH\nfoo\n=======\nbar\n")
        assert False, "Should have raised PatchParseError"
    except PatchParseError as e:
        assert "Incomplete SEARCH/REPLACE block" in str(e)


def test_sr_parse_no_blocks():
    try:
        parse_search_replace("nothing to see here\n")
        assert False, "Should have raised PatchParseError"
    except PatchParseError as e:
        assert "No SEARCH/REPLACE blocks found" in str(e)


def test_sr_parse_empty_search():
    try:
        parse_search_replace("------- SEARCH\n=======\nx\n+++++++ REPLACE\n")
        assert False, "Should have raised PatchParseError"
    except PatchParseError as e:
        assert "SEARCH block is empty" in str(e)


def test_sr_parse_divider_out_of_order():
    try:
        parse_search_replace("=======\n")
        assert False, "Should have raised PatchParseError"
    except PatchParseError as e:
        assert "without preceding SEARCH" in str(e)


def test_edit_operation_rejects_empty_search():
    try:
        EditOperation("", "x")
        assert False, "Should have raised ValueError"
    except ValueError:
        pass


# ============================================================
# Applier: context hunks
# ============================================================

def test_process_patch_update():
    fs = MemoryFileAccess({"a.txt": "one\ntwo\nthree\n"})
    result = process(patch(
        "*** Update File: a.txt",
        "@@",
        " one",
        "-two",
        "+TWO",
        " three",
    ), fs)
    assert result == "Done!"
    assert fs.files["a.txt"] == "one\nTWO\nthree\n"


def test_process_patch_add_and_delete():
    fs = MemoryFileAccess({"old.txt": "bye\n"})
    process(patch(
        "*** Add File: new/hello.txt",
        "+hi",
        "*** Delete File: old.txt",
    ), fs)
    assert fs.files == {"new/hello.txt": "hi\n"}
    assert fs.removals == ["old.txt"]


def test_context_match_ignores_trailing_whitespace():
    fs = MemoryFileAccess({"a.py": "a = 1  \nb = 2\n"})
    process(patch(
        "*** Update File: a.py",
        "@@",
        " a = 1",
        "-b = 2",
        "+b = 3",
    ), fs)
    assert fs.files["a.py"] == "a = 1\nb = 3\n"


def test_hunks_apply_in_order():
    fs = MemoryFileAccess({"a.txt": "x\nmid\nx\n"})
    process(patch(
        "*** Update File: a.txt",
        "@@",
        "-x",
        "+first",
        "@@",
        "-x",
        "+second",
    ), fs)
    assert fs.files["a.txt"] == "first\nmid\nsecond\n"


def test_end_of_file_anchor():
    fs = MemoryFileAccess({"a.txt": "x\ny\nx\n"})
    process(patch(
        "*** Update File: a.txt",
        "@@",
        "-x",
        "+z",
        "*** End of File",
    ), fs)
    assert fs.files["a.txt"] == "x\ny\nz\n"


def test_pure_insertion_appends():
    fs = MemoryFileAccess({"a.txt": "one\n"})
    process(patch("*** Update File: a.txt", "@@", "+two"), fs)
    assert fs.files["a.txt"] == "one\ntwo\n"


def test_move_to_renames():
    fs = MemoryFileAccess({"a.txt": "1\n"})
    summary = apply_plan(parse_patch(patch(
        "*** Update File: a.txt",
        "*** Move to: b.txt",
        "@@",
        "-1",
        "+2",
    )), fs)
    assert fs.files == {"b.txt": "2\n"}
    assert summary.modified == ["b.txt"]
    assert summary.deleted == ["a.txt"]


def test_context_mismatch_writes_nothing():
    fs = MemoryFileAccess({"a.txt": "real content\n"})
    try:
        process(patch(
            "*** Update File: a.txt",
            "@@",
            "-imagined content",
            "+new",
        ), fs)
        assert False, "Should have raised PatchApplyError"
    except PatchApplyError as e:
        assert e.path == "a.txt"
        assert "not found" in e.reason
        assert "imagined content" in e.reason
    assert fs.files == {"a.txt": "real content\n"}
    assert fs.writes == []
    assert fs.removals == []


def test_failed_batch_leaves_earlier_operations_unapplied():
    fs = MemoryFileAccess({"a.txt": "keep\n", "b.txt": "b\n"})
    try:
        process(patch(
            "*** Add File: new.txt",
            "+fresh",
            "*** Delete File: b.txt",
            "*** Update File: a.txt",
            "@@",
            "-missing",
            "+x",
        ), fs)
        assert False, "Should have raised PatchApplyError"
    except PatchApplyError:
        pass
    assert fs.files == {"a.txt": "keep\n", "b.txt": "b\n"}


def test_create_existing_file_fails():
    fs = MemoryFileAccess({"a.txt": "here\n"})
    try:
        process(patch("*** Add File: a.txt", "+again"), fs)
        assert False, "Should have raised PatchApplyError"
    except PatchApplyError as e:
        assert "already exists" in str(e)
    assert fs.files["a.txt"] == "here\n"


def test_delete_missing_file_fails():
    fs = MemoryFileAccess()
    try:
        process(patch("*** Delete File: ghost.txt"), fs)
        assert False, "Should have raised PatchApplyError"
    except PatchApplyError as e:
        assert str(e).startswith("ghost.txt: ")
        assert "does not exist" in str(e)


def test_update_missing_file_fails():
    fs = MemoryFileAccess()
    try:
        process(patch("*** Update File: ghost.txt", "@@", "-a", "+b"), fs)
        assert False, "Should have raised PatchApplyError"
    except PatchApplyError as e:
        assert "does not exist" in str(e)


def test_absolute_and_escaping_paths_rejected():
    fs = MemoryFileAccess()
    for bad in ("/etc/passwd", "../outside.txt", "a/../../outside.txt"):
        try:
            apply_plan([CreateFile(bad, "x\n")], fs)
            assert False, f"Should have rejected {bad}"
        except PatchApplyError as e:
            assert e.path == bad
    assert fs.writes == []


def test_paths_are_canonicalized():
    fs = MemoryFileAccess({"a.txt": "one\ntwo\n"})
    summary = apply_plan([
        UpdateFile("a.txt", edits=[EditOperation("one", "ONE")]),
        UpdateFile("./a.txt", edits=[EditOperation("two", "TWO")]),
        UpdateFile("sub/../a.txt", edits=[EditOperation("ONE\n", "1\n")]),
    ], fs)
    assert fs.files == {"a.txt": "1\nTWO\n"}
    assert summary.modified == ["a.txt"]
    assert fs.writes == [("a.txt", "1\nTWO\n")]


def test_working_directory_itself_is_not_a_file():
    try:
        apply_plan([CreateFile("./", "x\n")], MemoryFileAccess())
        assert False, "Should have raised PatchApplyError"
    except PatchApplyError as e:
        assert "working directory" in e.reason


def test_find_block_fuzz_order():
    lines = ["  a", "a", ""]
    # exact match wins over a whitespace-insensitive one earlier in the file
    assert find_block(lines, ["a"], 0) == 1
    assert find_block(lines, ["b"], 0) == -1
    assert find_block(["  a  "], ["a"], 0) == 0


# ============================================================
# Applier: rollback when the backend fails mid-commit
# ============================================================

class FailingWrites(MemoryFileAccess):
    """Memory backend whose writes to one path raise."""

    def __init__(self, files, fail_on):
        super().__init__(files)
        self.fail_on = fail_on

    def write(self, path, content):
        if path == self.fail_on:
            raise OSError(f"disk full writing {path}")
        super().write(path, content)


def test_commit_failure_rolls_back_earlier_writes():
    fs = FailingWrites({"a.txt": "a\n", "b.txt": "b\n"}, fail_on="b.txt")
    plan = [
        UpdateFile("a.txt", edits=[EditOperation("a", "A")]),
        CreateFile("c.txt", "new\n"),
        UpdateFile("b.txt", edits=[EditOperation("b", "B")]),
    ]
    try:
        apply_plan(plan, fs)
        assert False, "Should have raised PatchApplyError"
    except PatchApplyError as e:
        assert e.path == "b.txt"
        assert "disk full" in e.reason
        assert "rolled back" in e.reason
    assert fs.files == {"a.txt": "a\n", "b.txt": "b\n"}


# ============================================================
# Search/replace application
# ============================================================

def test_search_replace_on_disk():
    tmpdir = make_tmpdir()
    try:
        with open(os.path.join(tmpdir, "test.js"), "w", encoding="utf-8") as f:
            f.write('console.log("hello world");\n')
        msg = apply_search_replace(
            "test.js",
            sr_block('console.log("hello world");', 'console.log("Hello, World!");'),
            workdir=tmpdir,
        )
        assert "Successfully applied 1 search/replace operation" in msg
        with open(os.path.join(tmpdir, "test.js"), encoding="utf-8") as f:
            content = f.read()
        assert 'console.log("Hello, World!");' in content
        assert 'console.log("hello world");' not in content
    finally:
        shutil.rmtree(tmpdir)


def test_search_replace_multiple_blocks_in_order():
    fs = MemoryFileAccess({"f.py": "a = 1\nb = 2\n"})
    msg = apply_search_replace("f.py", sr_block("a = 1", "a = 10") + sr_block("b = 2", "b = 20"),
                               file_access=fs)
    assert msg.startswith("Successfully applied 2 search/replace operation(s)")
    assert fs.files["f.py"] == "a = 10\nb = 20\n"


def test_search_replace_ambiguous_match():
    fs = MemoryFileAccess({"f.txt": "dup\nother\ndup\n"})
    try:
        apply_search_replace("f.txt", sr_block("dup", "x"), file_access=fs)
        assert False, "Should have raised PatchApplyError"
    except PatchApplyError as e:
        assert "Multiple occurrences found (2)" in str(e)
        assert "Failed to apply search/replace" in str(e)
    assert fs.files["f.txt"] == "dup\nother\ndup\n"
    assert fs.writes == []


def test_search_replace_replace_all():
    fs = MemoryFileAccess({"f.txt": "dup\nother\ndup\n"})
    apply_search_replace("f.txt", sr_block("dup", "x"), file_access=fs, replace_all=True)
    assert fs.files["f.txt"] == "x\nother\nx\n"


def test_search_replace_is_exact():
    fs = MemoryFileAccess({"f.py": "    return 1\n"})
    try:
        apply_search_replace("f.py", sr_block("return  1", "return 2"), file_access=fs)
        assert False, "Should have raised PatchApplyError"
    except PatchApplyError as e:
        assert "Search content not found" in str(e)
    assert fs.files["f.py"] == "    return 1\n"


def test_search_replace_not_found_hint():
    fs = MemoryFileAccess({"f.py": "def handler(request):\n    pass\n"})
    try:
        apply_search_replace("f.py", sr_block("def handler(req):", "def handler(r):"), file_access=fs)
        assert False, "Should have raised PatchApplyError"
    except PatchApplyError as e:
        assert "Closest line 1" in str(e)


def test_search_replace_parse_error_propagates():
    fs = MemoryFileAccess({"f.txt": "x\n"})
    try:
        apply_search_replace("f.txt", "------- SEARCH\nx\n", file_access=fs)
        assert False, "Should have raised PatchParseError"
    except PatchParseError:
        pass


# ============================================================
# Multi-file edits
# ============================================================

def test_multi_edit_success():
    fs = MemoryFileAccess({"a.py": "x = 1\ny = 1\n", "b.py": "z = 1\n"})
    msg = multi_edit([
        {"path": "a.py", "old_string": "x = 1", "new_string": "x = 2"},
        {"path": "b.py", "old_string": "z = 1", "new_string": "z = 2"},
        {"path": "a.py", "old_string": "y = 1", "new_string": "y = 2"},
    ], file_access=fs)
    assert msg == "Applied 3 edits to 2 file(s)"
    assert fs.files == {"a.py": "x = 2\ny = 2\n", "b.py": "z = 2\n"}


def test_multi_edit_second_file_fails_first_unchanged():
    original_a = "x = 1\n"
    fs = MemoryFileAccess({"a.py": original_a, "b.py": "y = 2\n"})
    try:
        multi_edit([
            {"path": "a.py", "old_string": "x = 1", "new_string": "x = 10"},
            {"path": "b.py", "old_string": "not in b", "new_string": "z"},
        ], file_access=fs)
        assert False, "Should have raised PatchApplyError"
    except PatchApplyError as e:
        assert e.path == "b.py"
    assert fs.files["a.py"] == original_a
    assert fs.writes == []


def test_multi_edit_identical_strings_rejected():
    fs = MemoryFileAccess({"a.py": "x\n"})
    try:
        multi_edit([{"path": "a.py", "old_string": "x", "new_string": "x"}], file_access=fs)
        assert False, "Should have raised PatchApplyError"
    except PatchApplyError as e:
        assert "identical" in str(e)


def test_multi_edit_missing_field():
    try:
        multi_edit([{"path": "a.py", "old_string": "x"}], file_access=MemoryFileAccess())
        assert False, "Should have raised ValueError"
    except ValueError as e:
        assert "new_string" in str(e)


# ============================================================
# Disk tools with the approval gate
# ============================================================

def test_apply_patch_tool_on_disk():
    tmpdir = make_tmpdir()
    try:
        with open(os.path.join(tmpdir, "a.txt"), "w", encoding="utf-8") as f:
            f.write("one\ntwo\n")
        gate = ApprovalGate("auto-edit")
        result = apply_patch(patch(
            "*** Add File: sub/new.txt",
            "+created",
            "*** Update File: a.txt",
            "@@",
            " one",
            "-two",
            "+2",
        ), workdir=tmpdir, gate=gate)
        assert result["ok"], result
        assert result["added"] == ["sub/new.txt"]
        assert result["modified"] == ["a.txt"]
        with open(os.path.join(tmpdir, "sub", "new.txt"), encoding="utf-8") as f:
            assert f.read() == "created\n"
        with open(os.path.join(tmpdir, "a.txt"), encoding="utf-8") as f:
            assert f.read() == "one\n2\n"
    finally:
        shutil.rmtree(tmpdir)


def test_apply_patch_tool_denied_without_approver():
    tmpdir = make_tmpdir()
    try:
        result = apply_patch(patch("*** Add File: x.txt", "+x"), workdir=tmpdir,
                             gate=ApprovalGate("suggest"))
        assert not result["ok"]
        assert "requires approval" in result["error"]
        assert not result["aborts_turn"]
        assert not os.path.exists(os.path.join(tmpdir, "x.txt"))
    finally:
        shutil.rmtree(tmpdir)


def test_apply_patch_tool_reports_parse_error():
    result = apply_patch("not a patch", workdir=tempfile.gettempdir())
    assert not result["ok"]
    assert "Invalid patch" in result["error"]


def test_apply_patch_tool_rollback_on_disk():
    tmpdir = make_tmpdir()
    try:
        with open(os.path.join(tmpdir, "a.txt"), "w", encoding="utf-8") as f:
            f.write("a\n")
        result = apply_patch(patch(
            "*** Update File: a.txt",
            "@@",
            "-a",
            "+A",
            "*** Delete File: missing.txt",
        ), workdir=tmpdir)
        assert not result["ok"]
        assert "missing.txt" in result["error"]
        with open(os.path.join(tmpdir, "a.txt"), encoding="utf-8") as f:
            assert f.read() == "a\n"
    finally:
        shutil.rmtree(tmpdir)


def test_apply_patch_tool_same_file_two_spellings():
    tmpdir = make_tmpdir()
    try:
        with open(os.path.join(tmpdir, "a.txt"), "w", encoding="utf-8") as f:
            f.write("one\ntwo\n")
        result = apply_patch(patch(
            "*** Update File: a.txt",
            "@@",
            "-one",
            "+ONE",
            "*** Update File: ./a.txt",
            "@@",
            "-two",
            "+TWO",
        ), workdir=tmpdir)
        assert result["ok"], result
        assert result["modified"] == ["a.txt"]
        with open(os.path.join(tmpdir, "a.txt"), encoding="utf-8") as f:
            assert f.read() == "ONE\nTWO\n"
    finally:
        shutil.rmtree(tmpdir)


def test_apply_patch_tool_undecodable_file():
    tmpdir = make_tmpdir()
    try:
        with open(os.path.join(tmpdir, "bin.dat"), "wb") as f:
            f.write(b"\xff\xfe\x00bad\n")
        result = apply_patch(patch(
            "*** Update File: bin.dat",
            "@@",
            "-bad",
            "+good",
        ), workdir=tmpdir)
        assert not result["ok"]
        assert "bin.dat" in result["error"]
        assert "not valid UTF-8" in result["error"]
        with open(os.path.join(tmpdir, "bin.dat"), "rb") as f:
            assert f.read() == b"\xff\xfe\x00bad\n"
    finally:
        shutil.rmtree(tmpdir)


def test_edit_tool_undecodable_file():
    tmpdir = make_tmpdir()
    try:
        with open(os.path.join(tmpdir, "bin.dat"), "wb") as f:
            f.write(b"\xff\xfe\x00bad\n")
        r = edit("bin.dat", sr_block("bad", "good"), workdir=tmpdir)
        assert not r["ok"]
        assert "bin.dat: Failed to apply search/replace: File is not valid UTF-8 text" == r["error"]
    finally:
        shutil.rmtree(tmpdir)


def test_edit_tool_returns_dict():
    tmpdir = make_tmpdir()
    try:
        with open(os.path.join(tmpdir, "f.txt"), "w", encoding="utf-8") as f:
            f.write("hello\n")
        r = edit("f.txt", sr_block("hello", "goodbye"), workdir=tmpdir)
        assert r["ok"]
        assert "Successfully applied 1" in r["message"]
        r = edit("f.txt", sr_block("hello", "again"), workdir=tmpdir)
        assert not r["ok"]
        assert "Search content not found" in r["error"]
    finally:
        shutil.rmtree(tmpdir)


def test_disk_file_access_preserves_newlines():
    tmpdir = make_tmpdir()
    try:
        fs = DiskFileAccess(tmpdir)
        fs.write("crlf.txt", "a\r\nb\r\n")
        assert fs.open("crlf.txt") == "a\r\nb\r\n"
        fs.remove("crlf.txt")
        try:
            fs.open("crlf.txt")
            assert False, "Should have raised FileNotFoundError"
        except FileNotFoundError:
            pass
    finally:
        shutil.rmtree(tmpdir)


# ============================================================
# Runner
# ============================================================

if __name__ == "__main__":
    test_functions = [v for k, v in sorted(globals().items()) if k.startswith("test_")]
    passed = 0
    failed = 0
    for fn in test_functions:
        try:
            fn()
            passed += 1
            print(f"  PASS  {fn.__name__}")
        except Exception as e:
            failed += 1
            print(f"  FAIL  {fn.__name__}: {e}")

    print(f"\n{passed} passed, {failed} failed, {passed + failed} total")
    sys.exit(1 if failed else 0)
