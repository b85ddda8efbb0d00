from __future__ import annotations

import json
import os

from ucode.tools import (
    SUPPORTED_TOOLS,
    ToolName,
    ToolResult,
    clip_text,
    create_core_registry,
    run_tool_call,
)


def test_registry_exposes_exactly_the_four_core_tools(workspace):
    registry = create_core_registry(str(workspace))

    assert sorted(registry.list_tools()) == ["bash", "edit", "read", "write"]
    assert SUPPORTED_TOOLS == ["read", "write", "edit", "bash"]
    names = [spec["function"]["name"] for spec in registry.openai_specs()]
    assert sorted(names) == ["bash", "edit", "read", "write"]
    assert all("input_schema" in spec for spec in registry.anthropic_specs())


def test_tool_name_parse_is_case_insensitive_and_closed():
    assert ToolName.parse(" READ ") is ToolName.READ
    assert ToolName.parse("grep") is None
    assert ToolName.parse(None) is None


def test_tool_name_parse_accepts_members():
    assert ToolName.parse(ToolName.BASH) is ToolName.BASH
    assert create_core_registry(".").get(ToolName.READ) is not None


def test_unknown_tool_is_a_failure_not_an_exception(workspace):
    result = run_tool_call("grep", {"pattern": "x"}, str(workspace))

    assert not result.ok
    assert result.error == "unknown tool"
    assert result["supported_tools"] == ["read", "write", "edit", "bash"]


def test_read_line_range(workspace):
    (workspace / "notes.txt").write_text("one\ntwo\nthree\nfour\n", encoding="utf-8")

    result = run_tool_call("read", {"path": "notes.txt", "startLine": 2, "endLine": 3}, str(workspace))

    assert result.ok
    assert result["content"] == "two\nthree"
    assert result["startLine"] == 2
    assert result["endLine"] == 3
    assert result["totalLines"] == 5
    assert result["truncated"] is False


def test_read_handles_crlf_and_accepts_file_alias(workspace):
    (workspace / "crlf.txt").write_bytes(b"a\r\nb\r\n")

    result = run_tool_call("read", {"file": "crlf.txt"}, str(workspace))

    assert result.ok
    assert result["content"] == "a\nb\n"


def test_read_truncates_on_byte_budget_without_splitting_characters(workspace):
    (workspace / "wide.txt").write_text("é" * 400, encoding="utf-8")

    result = run_tool_call("read", {"path": "wide.txt", "maxBytes": 257}, str(workspace))

    assert result.ok
    assert result["truncated"] is True
    assert result["content"] == "é" * 128


def test_read_missing_file_fails(workspace):
    result = run_tool_call("read", {"path": "nope.txt"}, str(workspace))

    assert not result.ok
    assert result.error


def test_read_replaces_invalid_utf8(workspace):
    (workspace / "latin.txt").write_bytes(b"caf\xe9\n")

    result = run_tool_call("read", {"path": "latin.txt"}, str(workspace))

    assert result.ok
    assert result["content"] == "caf\ufffd\n"


def test_tilde_path_stays_inside_the_workspace(workspace):
    result = run_tool_call("write", {"path": "~/notes.md", "content": "n"}, str(workspace))

    assert result.ok
    assert (workspace / "~" / "notes.md").read_text(encoding="utf-8") == "n"


def test_paths_outside_the_workspace_are_refused(workspace):
    outside = workspace.parent / "secret.txt"
    outside.write_text("secret", encoding="utf-8")

    read = run_tool_call("read", {"path": "../secret.txt"}, str(workspace))
    write = run_tool_call("write", {"path": str(outside), "content": "x"}, str(workspace))

    assert read.error == "path escapes workspace root"
    assert write.error == "path escapes workspace root"
    assert outside.read_text(encoding="utf-8") == "secret"


def test_missing_path_is_reported(workspace):
    result = run_tool_call("read", {}, str(workspace))

    assert result.error == "path is required"


def test_write_creates_parents_and_appends(workspace):
    first = run_tool_call("write", {"path": "out/log.txt", "content": "a"}, str(workspace))
    second = run_tool_call("write", {"path": "out/log.txt", "content": "b", "mode": "append"}, str(workspace))
    third = run_tool_call("write", {"path": "out/log.txt", "content": "c", "append": True}, str(workspace))

    assert first.ok and first["mode"] == "overwrite"
    assert second["mode"] == "append"
    assert third["bytes"] == 3
    assert (workspace / "out" / "log.txt").read_text(encoding="utf-8") == "abc"


def test_edit_replaces_first_or_all(workspace):
    target = workspace / "code.py"
    target.write_text("x = 1\nx = 1\n", encoding="utf-8")

    first = run_tool_call("edit", {"path": "code.py", "find": "1", "replace": "2"}, str(workspace))
    assert first["replacements"] == 1
    assert target.read_text(encoding="utf-8") == "x = 2\nx = 1\n"

    every = run_tool_call("edit", {"path": "code.py", "search": "x", "replace": "y", "all": True}, str(workspace))
    assert every["replacements"] == 2
    assert target.read_text(encoding="utf-8") == "y = 2\ny = 1\n"


def test_edit_without_match_leaves_file_untouched(workspace):
    target = workspace / "code.py"
    target.write_text("hello", encoding="utf-8")
    before = target.stat().st_mtime_ns

    result = run_tool_call("edit", {"path": "code.py", "find": "absent", "replace": "x"}, str(workspace))

    assert result.ok
    assert result["changed"] is False
    assert result["replacements"] == 0
    assert target.stat().st_mtime_ns == before


def test_edit_requires_find(workspace):
    (workspace / "a.txt").write_text("a", encoding="utf-8")

    result = run_tool_call("edit", {"path": "a.txt", "replace": "b"}, str(workspace))

    assert result.error == "find pattern is required"


def test_bash_runs_in_workspace_root(workspace):
    result = run_tool_call("bash", {"command": "pwd && echo err >&2"}, str(workspace))

    assert result.ok
    assert result["code"] == 0
    assert os.path.realpath(result["stdout"].strip()) == os.path.realpath(str(workspace))
    assert result["stderr"].strip() == "err"


def test_bash_nonzero_exit_is_a_failure(workspace):
    result = run_tool_call("bash", {"command": "exit 3"}, str(workspace))

    assert not result.ok
    assert result["code"] == 3
    assert result.error == "command exited with 3"


def test_bash_timeout(workspace):
    result = run_tool_call("bash", {"command": "sleep 5", "timeoutMs": 200}, str(workspace))

    assert not result.ok
    assert result["code"] == -1
    assert result.error == "command timed out after 200ms"


def test_bash_requires_command(workspace):
    assert run_tool_call("bash", {"command": "  "}, str(workspace)).error == "command is required"


def test_tool_result_message_is_clipped_json():
    result = ToolResult(ok=True, content="x" * 100)

    message = result.to_message(max_chars=40)

    assert message.endswith("\n...[truncated]")
    assert json.loads(ToolResult(ok=False, error="boom").to_message()) == {"ok": False, "error": "boom"}


def test_clip_text():
    assert clip_text("short", 10) == "short"
    assert clip_text("abcdef", 3) == "abc\n...[truncated]"
    assert clip_text(None) == ""
