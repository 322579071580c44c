import os

import pytest

from mdai.errors import UserCancelled
from mdai.tools import discover_tools, list_tool_names, read_files, run_tool, search_files, write_file

from fakes import ScriptedContext

UPDATE_A = "*** Update File: a.txt\n<<< SEARCH\nold\n===\nnew\n>>>\n"


def _bump_mtime(path):
    st = path.stat()
    os.utime(path, ns=(st.st_atime_ns, st.st_mtime_ns + 1_000_000_000))


@pytest.fixture
def project(tmp_path):
    (tmp_path / "a.txt").write_text("old\n", encoding="utf-8")
    (tmp_path / "b.txt").write_text("bee\n", encoding="utf-8")
    (tmp_path / "debug.log").write_text("noise\n", encoding="utf-8")
    (tmp_path / ".gitignore").write_text("*.log\n", encoding="utf-8")
    return tmp_path


# -----------------------------
# Registry
# -----------------------------

def test_registered_tools_have_reflective_schemas():
    assert {"write_file", "read_files", "search_files"} <= set(list_tool_names())
    specs = {s["name"]: s for s in discover_tools()}

    write_params = specs["write_file"]["parameters"]
    assert write_params["required"] == []
    assert write_params["properties"]["patch"]["type"] == "string"
    assert write_params["properties"]["patches"]["type"] == "array"
    assert "reason_for_call" in write_params["properties"]
    assert write_params["additionalProperties"] is False

    read_params = specs["read_files"]["parameters"]
    assert read_params["required"] == ["paths"]
    assert read_params["properties"]["paths"] == {
        "type": "array",
        "items": {"type": "string"},
        "description": "Project-relative file paths.",
    }


def test_discover_tools_filters_by_name():
    assert [s["name"] for s in discover_tools(["read_files"])] == ["read_files"]


def test_run_tool_unknown_and_missing_parameter(project):
    ctx = ScriptedContext(project)
    assert run_tool(ctx, "nope", {}) == {"ok": False, "reason": "unknown tool nope"}
    assert run_tool(ctx, "read_files", {}) == {"ok": False, "reason": "missing required parameter: paths"}


def test_run_tool_strips_reason_and_coerces_json_lists(project):
    ctx = ScriptedContext(project)
    result = run_tool(ctx, "read_files", {"paths": '["a.txt"]', "reason_for_call": "need context"})
    assert result == {"ok": True, "files": [{"path": "a.txt", "ok": True, "content": "old\n"}]}
    assert "[LOG] read_files: need context" in ctx.output


def test_run_tool_wraps_a_bare_path_string_in_a_list(project):
    result = run_tool(ScriptedContext(project), "read_files", {"paths": "a.txt"})
    assert result["ok"] is True
    assert [f["path"] for f in result["files"]] == ["a.txt"]
    assert result["files"][0]["content"] == "old\n"


# -----------------------------
# read_files
# -----------------------------

def test_read_files_keeps_request_order_and_reports_failures(project):
    ctx = ScriptedContext(project)
    result = read_files(ctx, ["b.txt", "debug.log", "../outside.txt", "missing.txt", "./a.txt"])
    assert not result["ok"]
    files = result["files"]
    assert [f["path"] for f in files] == ["b.txt", "debug.log", "../outside.txt", "missing.txt", "a.txt"]
    assert [f["ok"] for f in files] == [True, False, False, False, True]
    assert files[0]["content"] == "bee\n"
    assert "ignored" in files[1]["error"]
    assert "escapes" in files[2]["error"]
    assert (project / "a.txt").resolve() in ctx.state.file_tracker
    assert (project / "debug.log").resolve() not in ctx.state.file_tracker


# -----------------------------
# write_file
# -----------------------------

def test_add_with_approval(project):
    ctx = ScriptedContext(project, choices=["all"])
    result = write_file(ctx, patch="*** Add File: c/new.txt\n<<< ADD\nhi\n>>>")
    assert result == {"ok": True, "results": [{"ok": True, "path": "c/new.txt", "status": "add"}]}
    assert (project / "c/new.txt").read_text(encoding="utf-8") == "hi"
    assert any("*** Add File: c/new.txt" in line for line in ctx.output)


def test_structured_patches_through_run_tool(project):
    ctx = ScriptedContext(project, choices=["all"])
    result = run_tool(ctx, "write_file", {"patches": [{"type": "delete", "path": "b.txt"}]})
    assert result["ok"]
    assert not (project / "b.txt").exists()


def test_update_requires_a_prior_read(project):
    ctx = ScriptedContext(project)
    result = write_file(ctx, patch=UPDATE_A)
    assert result["ok"] is False
    assert result["results"][0]["status"] == "file-outdated"
    assert (project / "a.txt").read_text(encoding="utf-8") == "old\n"
    assert ctx.asked == []


def test_update_after_read_and_always_allow(project):
    ctx = ScriptedContext(project, choices=["always"])
    read_files(ctx, ["a.txt"])
    result = write_file(ctx, patch=UPDATE_A)
    assert result["results"][0]["status"] == "update-successful"
    assert ctx.state.always_allow_writes

    # the write refreshed the tracker, and "always" skips the question
    result = write_file(ctx, patch="*** Update File: a.txt\n<<< SEARCH\nnew\n===\nnewer\n>>>")
    assert result["results"][0]["status"] == "update-successful"
    assert (project / "a.txt").read_text(encoding="utf-8") == "newer\n"


def test_update_after_external_change_is_outdated(project):
    ctx = ScriptedContext(project, choices=["all"])
    read_files(ctx, ["a.txt"])
    (project / "a.txt").write_text("old\nchanged elsewhere\n", encoding="utf-8")
    _bump_mtime(project / "a.txt")
    result = write_file(ctx, patch=UPDATE_A)
    assert result["results"][0]["status"] == "file-outdated"
    assert (project / "a.txt").read_text(encoding="utf-8") == "old\nchanged elsewhere\n"


def test_user_denies_with_reason(project):
    ctx = ScriptedContext(project, choices=["none"], inputs=["wrong file"])
    result = write_file(ctx, patch="*** Add File: new.txt\n<<< ADD\nhi\n>>>")
    assert result == {
        "ok": False,
        "results": [{"ok": False, "path": "new.txt", "status": "user-denied", "reason": "wrong file"}],
    }
    assert not (project / "new.txt").exists()


def test_user_picks_some_patches(project):
    ctx = ScriptedContext(project, choices=["some", "yes", "no"])
    patch = "*** Add File: one.txt\n<<< ADD\n1\n>>>\n*** Add File: two.txt\n<<< ADD\n2\n>>>\n"
    result = write_file(ctx, patch=patch)
    assert [r["status"] for r in result["results"]] == ["add", "user-denied"]
    assert (project / "one.txt").exists()
    assert not (project / "two.txt").exists()


def test_cancelled_approval_propagates(project):
    ctx = ScriptedContext(project)
    with pytest.raises(UserCancelled):
        run_tool(ctx, "write_file", {"patch": "*** Add File: new.txt\n<<< ADD\nhi\n>>>"})
    assert not (project / "new.txt").exists()


def test_invalid_patch_text(project):
    ctx = ScriptedContext(project)
    result = write_file(ctx, patch="*** Add File: new.txt\nhi\n")
    assert result["ok"] is False
    assert result["status"] == "invalid-patch"


def test_write_file_needs_some_input(project):
    assert write_file(ScriptedContext(project))["status"] == "invalid-patch"


# -----------------------------
# search_files
# -----------------------------

@pytest.fixture
def tree(project):
    (project / "src").mkdir()
    (project / "src" / "app.py").write_text("import os\n\nprint('old value')\n", encoding="utf-8")
    (project / "src" / "notes.md").write_text("old notes\n", encoding="utf-8")
    (project / "build").mkdir()
    (project / "build" / "app.py").write_text("old build output\n", encoding="utf-8")
    (project / "blob.bin").write_bytes(b"\xff\xfeold\x00")
    (project / ".gitignore").write_text("*.log\nbuild/\n", encoding="utf-8")
    return project


def test_search_files_reports_line_numbers_and_skips_ignored(tree):
    ctx = ScriptedContext(tree)
    result = search_files(ctx, "old")
    assert result["ok"] is True
    assert result["truncated"] is False
    assert result["matches"] == [
        {"path": "a.txt", "line": 1, "text": "old"},
        {"path": "src/app.py", "line": 3, "text": "print('old value')"},
        {"path": "src/notes.md", "line": 1, "text": "old notes"},
    ]


def test_search_files_is_case_sensitive(tree):
    assert search_files(ScriptedContext(tree), "OLD")["matches"] == []


def test_search_files_glob_filter(tree):
    result = search_files(ScriptedContext(tree), "old", glob="*.py")
    assert [m["path"] for m in result["matches"]] == ["src/app.py"]
    result = search_files(ScriptedContext(tree), "old", glob="src/*.md")
    assert [m["path"] for m in result["matches"]] == ["src/notes.md"]


def test_search_files_stops_at_max_results(tree):
    result = run_tool(ScriptedContext(tree), "search_files", {"query": "old", "max_results": "2"})
    assert len(result["matches"]) == 2
    assert result["truncated"] is True


def test_search_files_needs_a_query(tree):
    assert search_files(ScriptedContext(tree), "")["ok"] is False
