from __future__ import annotations

import json
import threading

import requests

from ucode.agent import ToolEvent
from ucode.bus import ShellResult
from ucode.session import (
    AgentSession,
    SessionResult,
    build_system_context,
    enrich_error,
    extended_timeout_ms,
    extract_json_summary,
    fallback_summary,
    format_result,
    is_project_analysis_task,
    run_bus_once,
)

from conftest import FakeResponse, FakeSession, openai_text_stream, static_config


def make_session(workspace, env, *responses, **kwargs):
    http = FakeSession(*responses)
    session = AgentSession(
        workspace_root=str(workspace),
        http_session=http,
        env=env,
        config_loader=static_config(),
        **kwargs,
    )
    return session, http


class TestRun:
    def test_successful_task_is_summarized_and_persisted(self, workspace, openai_env):
        session, http = make_session(workspace, openai_env, openai_text_stream("Hello"))

        result = session.run("say hello")

        assert result.ok
        assert result.summary == "Hello"
        assert format_result(result) == "Hello"
        assert session.messages[-1] == {"role": "assistant", "content": "Hello"}
        assert session.created_at
        assert session.store.load(session.session_id).ok

    def test_history_carries_into_the_next_task(self, workspace, openai_env):
        session, http = make_session(
            workspace, openai_env, openai_text_stream("first"), openai_text_stream("second"),
        )

        session.run("one")
        session.run("two")

        sent = http.calls[1]["payload"]["messages"]
        assert [m["content"] for m in sent] == ["one", "first", "two"]

    def test_timeout_is_retried_once_with_a_longer_budget(self, workspace, openai_env):
        session, http = make_session(
            workspace,
            openai_env,
            requests.exceptions.ReadTimeout("slow"),
            openai_text_stream("late but fine"),
            timeout_ms=1000,
        )

        result = session.run("do it")

        assert result.ok
        assert result.summary == "late but fine"
        assert [c["timeout"] for c in http.calls] == [1.0, 121.0]

    def test_second_timeout_is_reported(self, workspace, openai_env):
        session, http = make_session(
            workspace,
            openai_env,
            requests.exceptions.ReadTimeout("slow"),
            requests.exceptions.ReadTimeout("slower"),
            timeout_ms=1000,
        )

        result = session.run("do it")

        assert not result.ok
        assert result.error == "timeout (121000ms)"
        assert len(http.calls) == 2

    def test_other_failures_are_not_retried_and_get_a_hint(self, workspace, openai_env):
        session, http = make_session(workspace, openai_env, FakeResponse(status_code=401, text="denied"))

        result = session.run("do it")

        assert not result.ok
        assert result.error.startswith("provider request failed (401): denied. Check provider/url/key")
        assert len(http.calls) == 1
        assert format_result(result).startswith("Error: provider request failed (401)")
        assert session.messages == []

    def test_cancelled_task(self, workspace, openai_env):
        session, http = make_session(workspace, openai_env)
        signal = threading.Event()
        signal.set()

        result = session.run("do it", signal=signal)

        assert result.cancelled
        assert format_result(result) == "Cancelled."
        assert http.calls == []

    def test_empty_task(self, workspace, openai_env):
        session, _ = make_session(workspace, openai_env)
        assert session.run("  ").error == "empty task"

    def test_json_answer_is_reduced_to_its_summary(self, workspace, openai_env):
        answer = 'Working...\n{"reply": "all good"}'
        session, _ = make_session(workspace, openai_env, openai_text_stream(answer))

        assert session.run("check").summary == "all good"

    def test_deltas_and_tool_logs_reach_the_callbacks(self, workspace, openai_env):
        session, _ = make_session(workspace, openai_env, openai_text_stream("a", "b"))
        deltas = []

        result = session.run("go", on_delta=deltas.append)

        assert deltas == ["a", "b"]
        assert result.streamed


class TestPreflight:
    def test_analysis_keywords(self):
        assert is_project_analysis_task("Please REVIEW this")
        assert is_project_analysis_task("analyse the code")
        assert not is_project_analysis_task("write a poem")

    def test_analysis_task_gets_a_file_snapshot(self, workspace, openai_env):
        (workspace / "README.md").write_text("# Demo\nA tiny project.\n", encoding="utf-8")
        session, http = make_session(workspace, openai_env, openai_text_stream("ok"), context="house rules")
        logs = []

        session.run("review the project", on_tool_log=logs.append)

        messages = http.calls[0]["payload"]["messages"]
        system, user = messages[0], messages[1]
        assert system["role"] == "system"
        assert system["content"].startswith("house rules\n\nPreflight snapshot (captured by ucode):\n---\nFile: README.md\n# Demo")
        assert user["content"].startswith("review the project\n\nAnalysis requirements:\n")
        assert ("read", "start", {"path": "README.md"}) in [(e.tool, e.phase, e.args) for e in logs]

    def test_snapshot_stops_after_two_files(self, workspace, openai_env):
        for name in ("AGENTS.md", "README.md", "package.json"):
            (workspace / name).write_text(f"content of {name}", encoding="utf-8")
        session, http = make_session(workspace, openai_env, openai_text_stream("ok"))

        session.run("audit")

        system = http.calls[0]["payload"]["messages"][0]["content"]
        assert "File: AGENTS.md" in system
        assert "File: README.md" in system
        assert "package.json" not in system

    def test_directory_listing_when_no_project_files_exist(self, workspace, openai_env):
        (workspace / "main.py").write_text("print(1)\n", encoding="utf-8")
        session, http = make_session(workspace, openai_env, openai_text_stream("ok"))

        session.run("what is the status of this repo")

        system = http.calls[0]["payload"]["messages"][0]["content"]
        assert "---\nCommand: ls -la\n" in system
        assert "main.py" in system

    def test_plain_task_has_no_preflight(self, workspace, openai_env):
        (workspace / "README.md").write_text("readme", encoding="utf-8")
        session, http = make_session(workspace, openai_env, openai_text_stream("ok"))

        session.run("write hello.txt")

        assert http.calls[0]["payload"]["messages"] == [{"role": "user", "content": "write hello.txt"}]


class TestPersistence:
    def test_resume_restores_the_conversation(self, workspace, openai_env):
        first, _ = make_session(workspace, openai_env, openai_text_stream("remembered"),
                                model="gpt-test", context="ctx")
        first.run("remember this")

        second, http = make_session(workspace, openai_env, openai_text_stream("yes"))
        loaded = second.resume(first.session_id)

        assert loaded.ok
        assert second.session_id == first.session_id
        assert second.model == "gpt-test"
        assert second.context == "ctx"
        assert second.created_at == first.created_at
        assert second.messages == first.messages

        second.run("do you remember?")
        assert http.calls[0]["payload"]["messages"][1]["content"] == "remember this"

    def test_resume_failures(self, workspace, openai_env):
        session, _ = make_session(workspace, openai_env)

        assert session.resume("bad id!").error == "invalid session id"
        assert session.resume("ucode-missing").error == "session not found: ucode-missing"

    def test_persist_assigns_an_id_and_keeps_created_at(self, workspace, openai_env):
        session, _ = make_session(workspace, openai_env)

        saved = session.persist()
        created = session.created_at
        again = session.persist()

        assert saved.ok
        assert session.session_id.startswith("ucode-")
        assert again.session_id == saved.session_id
        assert session.created_at == created

    def test_explicit_session_id_is_used(self, workspace, openai_env):
        session, _ = make_session(workspace, openai_env, openai_text_stream("ok"), session_id="ucode-mine")

        session.run("hi")

        assert session.session_id == "ucode-mine"
        assert (workspace / ".ufoo" / "agent" / "ucode-core" / "sessions" / "ucode-mine.json").exists()


class TestHelpers:
    def test_extended_timeout(self):
        assert extended_timeout_ms(300000) == 600000
        assert extended_timeout_ms(1000) == 121000
        assert extended_timeout_ms(1500000) == 1800000
        assert extended_timeout_ms("junk") == 600000

    def test_enrich_error(self):
        assert enrich_error("") == "task failed"
        assert "Network connection to provider failed" in enrich_error("network error: connection refused")
        assert "UFOO_UCODE_MODEL" in enrich_error("ucode model is not configured")
        assert "UFOO_UCODE_BASE_URL" in enrich_error("ucode baseUrl is not configured")
        assert "Check provider/url/key" in enrich_error("provider request failed (403): nope")
        assert enrich_error("something else") == "something else"

    def test_extract_json_summary(self):
        assert extract_json_summary('{"summary": "s"}') == "s"
        assert extract_json_summary('{"reply": "r"}') == "r"
        assert extract_json_summary('log\n{"summary": "last"}\n') == "last"
        assert extract_json_summary('{"other": 1}') == '{"other": 1}'
        assert extract_json_summary("plain text") == "plain text"
        assert extract_json_summary("") == ""

    def test_fallback_summary(self):
        logs = [
            ToolEvent(tool="read", phase="start"),
            ToolEvent(tool="bash", phase="start"),
            ToolEvent(tool="bash", phase="error", error="boom"),
        ]
        assert fallback_summary(logs) == "Done (2 tool steps started, 1 failed)."
        assert fallback_summary(logs[:1]) == "Done (1 tool step started)."
        assert fallback_summary([]) == "Done (no model text response)."

    def test_format_result(self):
        assert format_result(None) == "Error: task failed"
        assert format_result(SessionResult(ok=False, error="x")) == "Error: x"
        assert format_result(SessionResult(ok=True, summary="  ")) == "Done (no model text response)."
        payload = json.loads(format_result(SessionResult(ok=True, summary="s"), as_json=True))
        assert payload["ok"] is True and payload["summary"] == "s"

    def test_build_system_context(self, tmp_path):
        prompt_file = tmp_path / "prompt.md"
        prompt_file.write_text("from file", encoding="utf-8")

        assert build_system_context("inline", "ignored", env={}) == "inline"
        assert build_system_context("", str(prompt_file), env={}) == "from file"
        assert build_system_context(env={"UFOO_UCODE_PROMPT_FILE": str(prompt_file)}) == "from file"
        assert build_system_context(env={}) == ""
        clipped = build_system_context("x" * 40000, env={})
        assert clipped == "x" * 32000 + "\n...[truncated]"


class FakeShell:
    def __init__(self, outputs=None):
        self.commands = []
        self.outputs = outputs or {}

    def __call__(self, command):
        self.commands.append(command)
        for prefix, output in self.outputs.items():
            if command.startswith(prefix):
                return ShellResult(ok=True, output=output)
        return ShellResult(ok=True)


class TestBus:
    def _queue(self, workspace, lines):
        queue = workspace / ".ufoo" / "bus" / "queues" / "ucode_1"
        queue.mkdir(parents=True, exist_ok=True)
        (queue / "pending.jsonl").write_text("\n".join(lines) + "\n", encoding="utf-8")
        return queue / "pending.jsonl"

    def test_answers_pending_messages(self, workspace, openai_env):
        event = {"event": "message", "publisher": "claude:7", "data": {"message": "say hi"}}
        pending = self._queue(workspace, [json.dumps(event)])
        session, _ = make_session(workspace, openai_env, openai_text_stream("hi there"))
        shell = FakeShell()

        outcome = run_bus_once(session, subscriber="ucode:1", shell=shell, env={})

        assert outcome == {
            "ok": True,
            "summary": "ubus: handled 1 message(s) for ucode:1.",
            "error": "",
            "handled": 1,
            "subscriber_id": "ucode:1",
        }
        assert shell.commands == ["ufoo bus send claude:7 'hi there'"]
        assert not pending.exists() or pending.read_text(encoding="utf-8").strip() == ""

    def test_no_pending_messages(self, workspace, openai_env):
        (workspace / ".ufoo" / "bus").mkdir(parents=True)
        session, _ = make_session(workspace, openai_env)

        outcome = run_bus_once(session, shell=FakeShell({"ufoo bus whoami": "ucode:1\n"}), env={})

        assert outcome["ok"]
        assert outcome["summary"] == "ubus: no pending messages for ucode:1."

    def test_subscriber_from_environment(self, workspace, openai_env):
        session, _ = make_session(workspace, openai_env)
        shell = FakeShell()

        outcome = run_bus_once(session, shell=shell, env={"UFOO_SUBSCRIBER_ID": "ucode:9"})

        assert outcome["subscriber_id"] == "ucode:9"
        assert shell.commands == []

    def test_unresolvable_subscriber(self, workspace, openai_env):
        session, _ = make_session(workspace, openai_env)

        outcome = run_bus_once(session, shell=FakeShell(), env={})

        assert not outcome["ok"]
        assert outcome["error"] == "failed to resolve bus subscriber id"

    def test_failed_task_is_answered_with_the_error(self, workspace, openai_env):
        event = {"event": "message", "publisher": "claude:7", "data": {"message": "break"}}
        self._queue(workspace, [json.dumps(event)])
        session, _ = make_session(workspace, openai_env, FakeResponse(status_code=500, text="oops"))
        shell = FakeShell()

        outcome = run_bus_once(session, subscriber="ucode:1", shell=shell, env={})

        assert outcome["handled"] == 1
        assert shell.commands[0].startswith("ufoo bus send claude:7 'Error: provider request failed (500): oops'")
