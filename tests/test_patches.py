import os
import stat

import pytest

from mdai.errors import MalformedInput, PatchConflict
from mdai.models import AddPatch, DeletePatch, MovePatch, ReplacePatch, UpdatePatch
from mdai.patches import (
    apply_patch,
    apply_patches,
    apply_update,
    format_patch,
    parse_patch_objects,
    parse_patch_text,
)

ALL_BLOCKS = """Some preamble the model wrote.
*** Add File: src/new.py
<<< ADD
def new():
    return 1
>>>
*** Delete File: old.txt
*** Move File: a.txt
<<< TO
docs/a.txt
>>>
*** Update File: src/main.py
<<< SEARCH
    return 1
===
    return 2
>>>
*** Replace File: README.md
<<< REPLACE WITH
# Title
>>>
"""


# -----------------------------
# Parsing
# -----------------------------

def test_parse_all_block_kinds():
    assert parse_patch_text(ALL_BLOCKS) == [
        AddPatch(path="src/new.py", content="def new():\n    return 1"),
        DeletePatch(path="old.txt"),
        MovePatch(path="a.txt", to="docs/a.txt"),
        UpdatePatch(path="src/main.py", search="    return 1", replace="    return 2"),
        ReplacePatch(path="README.md", content="# Title"),
    ]


def test_format_patch_parses_back():
    patch = UpdatePatch(path="a.py", search="x = 1\ny = 2", replace="x = 3")
    assert parse_patch_text(format_patch(patch)) == [patch]


def test_incomplete_block_is_reported_and_does_not_swallow_the_next():
    text = "*** Add File: a.txt\n<<< ADD\nnever closed\n*** Delete File: b.txt\n"
    with pytest.raises(MalformedInput, match="Add File: a.txt"):
        parse_patch_text(text)


def test_missing_opener_is_reported():
    with pytest.raises(MalformedInput, match="Update File: a.py"):
        parse_patch_text("*** Update File: a.py\nold\n===\nnew\n>>>\n")


def test_update_without_separator_is_reported():
    with pytest.raises(MalformedInput):
        parse_patch_text("*** Update File: a.py\n<<< SEARCH\nold\n>>>\n")


def test_parse_patch_objects():
    patches = parse_patch_objects(
        [{"type": "add", "path": "a.txt", "content": "x"}, {"type": "move", "path": "a.txt", "to": "./b.txt"}]
    )
    assert patches == [AddPatch(path="a.txt", content="x"), MovePatch(path="a.txt", to="b.txt")]


@pytest.mark.parametrize(
    "data",
    [
        [{"type": "rename", "path": "a.txt"}],
        [{"type": "update", "path": "a.txt", "search": "x"}],
        [{"type": "delete", "path": "a.txt", "extra": 1}],
        {"type": "delete", "path": "a.txt"},
    ],
)
def test_parse_patch_objects_rejects_bad_shapes(data):
    with pytest.raises(MalformedInput):
        parse_patch_objects(data)


# -----------------------------
# apply_update
# -----------------------------

def test_apply_update_exact():
    assert apply_update("a\nb\nc", "b", "B") == "a\nB\nc"


def test_apply_update_absent_search():
    with pytest.raises(PatchConflict):
        apply_update("a\nb\nc", "d", "D")


def test_apply_update_empty_search():
    with pytest.raises(PatchConflict):
        apply_update("a\nb", "  \n", "x")


def test_apply_update_replaces_every_occurrence():
    assert apply_update("x = 1\ny\nx = 1\n", "x = 1", "x = 2") == "x = 2\ny\nx = 2\n"


def test_apply_update_ignores_whitespace_drift():
    content = "def f():\n    if ok:\n        return 1\n"
    assert apply_update(content, "if ok:\n  return 1", "    if ok:\n        return 2") == (
        "def f():\n    if ok:\n        return 2\n"
    )


def test_apply_update_can_change_line_count():
    assert apply_update("a\nb\nc", "b", "b1\nb2\nb3") == "a\nb1\nb2\nb3\nc"


# -----------------------------
# apply_patch
# -----------------------------

def test_add_creates_parent_directories(tmp_path):
    result = apply_patch(AddPatch(path="deep/er/new.txt", content="hello"), tmp_path)
    assert result.ok and result.status == "add"
    assert (tmp_path / "deep/er/new.txt").read_text(encoding="utf-8") == "hello"


def test_add_on_existing_file_fails_and_keeps_contents(tmp_path):
    (tmp_path / "a.txt").write_text("original", encoding="utf-8")
    result = apply_patch(AddPatch(path="a.txt", content="new"), tmp_path)
    assert not result.ok
    assert result.status == "add-failed"
    assert (tmp_path / "a.txt").read_text(encoding="utf-8") == "original"


def test_path_escape_is_rejected_before_io(tmp_path):
    root = tmp_path / "project"
    root.mkdir()
    result = apply_patch(AddPatch(path="../escaped.txt", content="x"), root)
    assert not result.ok
    assert result.status == "add-failed"
    assert "escapes" in result.reason
    assert not (tmp_path / "escaped.txt").exists()


def test_root_itself_is_not_a_target(tmp_path):
    result = apply_patch(DeletePatch(path="."), tmp_path)
    assert not result.ok
    assert tmp_path.is_dir()


def test_delete(tmp_path):
    (tmp_path / "a.txt").write_text("x", encoding="utf-8")
    assert apply_patch(DeletePatch(path="a.txt"), tmp_path).status == "delete"
    assert not (tmp_path / "a.txt").exists()
    assert apply_patch(DeletePatch(path="a.txt"), tmp_path).status == "delete-failed"


def test_move(tmp_path):
    (tmp_path / "a.txt").write_text("x", encoding="utf-8")
    result = apply_patch(MovePatch(path="a.txt", to="docs/b.txt"), tmp_path)
    assert result.ok and result.status == "move"
    assert not (tmp_path / "a.txt").exists()
    assert (tmp_path / "docs/b.txt").read_text(encoding="utf-8") == "x"


def test_move_onto_existing_file_fails(tmp_path):
    (tmp_path / "a.txt").write_text("a", encoding="utf-8")
    (tmp_path / "b.txt").write_text("b", encoding="utf-8")
    result = apply_patch(MovePatch(path="a.txt", to="b.txt"), tmp_path)
    assert result.status == "move-failed"
    assert (tmp_path / "a.txt").read_text(encoding="utf-8") == "a"
    assert (tmp_path / "b.txt").read_text(encoding="utf-8") == "b"


def test_update_and_replace(tmp_path):
    target = tmp_path / "main.py"
    target.write_text("def f():\n    return 1\n", encoding="utf-8")
    result = apply_patch(UpdatePatch(path="main.py", search="return 1", replace="    return 2"), tmp_path)
    assert result.status == "update-successful"
    assert target.read_text(encoding="utf-8") == "def f():\n    return 2\n"

    result = apply_patch(ReplacePatch(path="main.py", content="pass\n"), tmp_path)
    assert result.status == "replace"
    assert target.read_text(encoding="utf-8") == "pass\n"


@pytest.mark.skipif(os.name == "nt", reason="POSIX permission bits")
def test_update_and_replace_keep_the_file_mode(tmp_path):
    script = tmp_path / "run.sh"
    script.write_text("#!/bin/sh\necho old\n", encoding="utf-8")
    script.chmod(0o755)
    assert apply_patch(UpdatePatch(path="run.sh", search="echo old", replace="echo new"), tmp_path).ok
    assert stat.S_IMODE(script.stat().st_mode) == 0o755
    assert apply_patch(ReplacePatch(path="run.sh", content="#!/bin/sh\n"), tmp_path).ok
    assert stat.S_IMODE(script.stat().st_mode) == 0o755
    assert script.read_text(encoding="utf-8") == "#!/bin/sh\n"


def test_update_without_match_reports_conflict(tmp_path):
    (tmp_path / "main.py").write_text("a\n", encoding="utf-8")
    result = apply_patch(UpdatePatch(path="main.py", search="zzz", replace="b"), tmp_path)
    assert result.status == "update-failed"
    assert "match" in result.reason


def test_replace_missing_file_fails(tmp_path):
    assert apply_patch(ReplacePatch(path="nope.txt", content="x"), tmp_path).status == "replace-failed"


def test_apply_patches_are_independent(tmp_path):
    results = apply_patches(
        [
            AddPatch(path="one.txt", content="1"),
            DeletePatch(path="missing.txt"),
            AddPatch(path="two.txt", content="2"),
        ],
        tmp_path,
    )
    assert [r.ok for r in results] == [True, False, True]
    assert (tmp_path / "two.txt").exists()
