"""
Agent session - the natural-language task front end.

An AgentSession carries the conversation between tasks (provider, model,
extra system context, message history, session id) and wraps run_task()
with everything a user-facing runner needs:

- one automatic retry with a longer budget after a timeout
- actionable hints appended to configuration/auth/network errors
- a preflight snapshot of project files for analysis-style tasks
- snapshot persistence after every successful task, and resume by id
"""
import os
import re
import json
import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, Any, List, Optional, Callable, Mapping

import requests

from .agent import ToolEvent, TaskResult, run_task
from .bus import BusClient, Shell, resolve_project_root
from .config import normalize_provider
from .defaults import (
    DEFAULT_TASK_TIMEOUT_MS,
    MAX_TASK_TIMEOUT_MS,
    MIN_TASK_TIMEOUT_MS,
    TIMEOUT_RETRY_EXTRA_MS,
    SYSTEM_CONTEXT_MAX_CHARS,
    PREFLIGHT_FILE_MAX_BYTES,
)
from .queue import QueueConsumer, QueueTask
from .state import SessionSnapshot, SessionStore, LoadResult, SaveResult, resolve_session_id
from .tools import ToolName, clip_text, run_tool_call

logger = logging.getLogger(__name__)

ANALYSIS_PATTERN = re.compile(
    r"analy[sz]e|analysis|review|audit|status|architecture|codebase|repo|project",
    re.IGNORECASE,
)

PREFLIGHT_FILES = ["AGENTS.md", "README.md", "README.zh-CN.md", "package.json", "pyproject.toml"]
PREFLIGHT_MAX_BLOCKS = 2
PREFLIGHT_BLOCK_CHARS = 2400

ANALYSIS_REQUIREMENTS = (
    "Analysis requirements:\n"
    "- Inspect repository evidence before concluding.\n"
    "- Cite concrete file observations.\n"
    "- Keep findings concise and actionable."
)


# =============================================================================
# Helpers
# =============================================================================

def extended_timeout_ms(base_ms: Any) -> int:
    """Budget for the single retry after a timeout."""
    try:
        base = max(MIN_TASK_TIMEOUT_MS, int(base_ms))
    except (TypeError, ValueError):
        base = DEFAULT_TASK_TIMEOUT_MS
    return min(MAX_TASK_TIMEOUT_MS, max(base * 2, base + TIMEOUT_RETRY_EXTRA_MS))


def enrich_error(message: str) -> str:
    """Append a hint telling the user how to fix common failures."""
    text = str(message or "").strip()
    if not text:
        return "task failed"

    lower = text.lower()
    if any(marker in lower for marker in (
        "network error",
        "connection refused",
        "name or service not known",
        "failed to resolve",
        "max retries exceeded",
        "connection aborted",
    )):
        return (
            f"{text}. Network connection to provider failed. Check VPN/proxy/network "
            "and verify the endpoint and key with `ucode --show-config`."
        )
    if "model is not configured" in lower:
        return (
            f"{text}. Configure ucode with `ucode --provider <openai|anthropic> --model <id>` "
            "or set UFOO_UCODE_MODEL / ucodeModel in .ufoo/config.json (plus UFOO_UCODE_API_KEY for the key)."
        )
    if "baseurl is not configured" in lower:
        return (
            f"{text}. Configure the endpoint with UFOO_UCODE_BASE_URL or ucodeBaseUrl "
            "in .ufoo/config.json (and key/model if missing)."
        )
    if (
        re.search(r"provider request failed \((401|403)\)", text, re.IGNORECASE)
        or "unauthorized" in lower
        or "invalid api key" in lower
    ):
        return f"{text}. Check provider/url/key with `ucode --show-config`."
    return text


def extract_json_summary(text: str) -> str:
    """`summary`/`reply` from a JSON answer (whole text or last JSON line), else the text."""
    raw = str(text or "").strip()
    if not raw:
        return ""

    def pick(value):
        if not isinstance(value, dict):
            return ""
        for key in ("summary", "reply"):
            if isinstance(value.get(key), str) and value[key].strip():
                return value[key].strip()
        return ""

    try:
        found = pick(json.loads(raw))
    except ValueError:
        found = ""
    if found:
        return found

    for line in reversed([line.strip() for line in raw.splitlines() if line.strip()]):
        try:
            found = pick(json.loads(line))
        except ValueError:
            continue
        if found:
            return found
    return raw


def fallback_summary(logs: List[ToolEvent]) -> str:
    started = sum(1 for e in logs if e.phase == "start")
    failed = sum(1 for e in logs if e.phase == "error")
    if started or failed:
        parts = [f"{started} tool step{'' if started == 1 else 's'} started"]
        if failed:
            parts.append(f"{failed} failed")
        return f"Done ({', '.join(parts)})."
    return "Done (no model text response)."


def read_text_or_file(value: Any) -> str:
    """Contents of `value` if it names an existing file, else the text itself."""
    raw = str(value or "").strip()
    if not raw:
        return ""
    if os.path.isfile(raw):
        try:
            with open(raw, "r", encoding="utf-8") as f:
                return f.read()
        except OSError as e:
            logger.warning("cannot read %s: %s", raw, e)
    return raw


def build_system_context(
    append_system_prompt: str = "",
    system_prompt: str = "",
    env: Optional[Mapping[str, str]] = None,
) -> str:
    env = os.environ if env is None else env
    text = read_text_or_file(append_system_prompt) or read_text_or_file(system_prompt)
    if not text:
        text = (
            read_text_or_file(env.get("UFOO_UCODE_APPEND_SYSTEM_PROMPT"))
            or read_text_or_file(env.get("UFOO_UCODE_BOOTSTRAP_FILE"))
            or read_text_or_file(env.get("UFOO_UCODE_PROMPT_FILE"))
        )
    return clip_text(text, SYSTEM_CONTEXT_MAX_CHARS)


def is_project_analysis_task(task: str) -> bool:
    return bool(ANALYSIS_PATTERN.search(str(task or "")))


def build_preflight_context(workspace_root: str, log: Callable[[ToolEvent], None]) -> str:
    """Snapshot of the main project files (or a directory listing) for analysis tasks."""
    blocks = []
    for rel_path in PREFLIGHT_FILES:
        args = {"path": rel_path}
        log(ToolEvent(tool=ToolName.READ.value, phase="start", args=args))
        result = run_tool_call(ToolName.READ, {"path": rel_path, "maxBytes": PREFLIGHT_FILE_MAX_BYTES}, workspace_root)
        if not result.ok:
            log(ToolEvent(tool=ToolName.READ.value, phase="error", args=args, error=result.error))
            continue
        content = str(result.get("content") or "").strip()
        if not content:
            continue
        blocks.append(f"File: {rel_path}\n{clip_text(content, PREFLIGHT_BLOCK_CHARS)}")
        if len(blocks) >= PREFLIGHT_MAX_BLOCKS:
            break

    if not blocks:
        command = "ls -la"
        args = {"command": command}
        log(ToolEvent(tool=ToolName.BASH.value, phase="start", args=args))
        result = run_tool_call(ToolName.BASH, {"command": command, "timeoutMs": 4000}, workspace_root)
        if result.ok:
            stdout = str(result.get("stdout") or "").strip()
            if stdout:
                blocks.append(f"Command: {command}\n{clip_text(stdout, 1200)}")
        else:
            log(ToolEvent(tool=ToolName.BASH.value, phase="error", args=args, error=result.error))

    if not blocks:
        return ""
    return "\n".join(["Preflight snapshot (captured by ucode):"] + [f"---\n{b}" for b in blocks])


# =============================================================================
# Session
# =============================================================================

@dataclass
class SessionResult:
    """What a user-facing runner shows for one task."""
    ok: bool
    summary: str = ""
    error: str = ""
    cancelled: bool = False
    streamed: bool = False
    logs: List[ToolEvent] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "summary": self.summary,
            "error": self.error,
            "cancelled": self.cancelled,
            "streamed": self.streamed,
            "logs": [e.to_dict() for e in self.logs],
        }


def format_result(result: Optional[SessionResult], as_json: bool = False) -> str:
    if as_json:
        payload = result.to_dict() if result is not None else {"ok": False, "error": "invalid result"}
        return json.dumps(payload, ensure_ascii=False)
    if result is not None and result.cancelled:
        return "Cancelled."
    if result is None or not result.ok:
        return f"Error: {(result.error if result else '') or 'task failed'}"
    return result.summary.strip() or fallback_summary(result.logs)


class AgentSession:
    """
    Conversation state carried between tasks

    Usage:
        session = AgentSession(workspace_root=".", model="gpt-4.1-mini")
        result = session.run("Review the project layout")
        print(format_result(result))
    """

    def __init__(
        self,
        workspace_root: str = ".",
        provider: str = "",
        model: str = "",
        context: str = "",
        session_id: str = "",
        timeout_ms: int = DEFAULT_TASK_TIMEOUT_MS,
        http_session: Optional[requests.Session] = None,
        env: Optional[Mapping[str, str]] = None,
        config_loader: Optional[Callable[[str], Dict[str, str]]] = None,
        persist: bool = True,
    ):
        self.workspace_root = os.path.abspath(workspace_root or os.getcwd())
        self.provider = normalize_provider(provider)
        self.model = str(model or "").strip()
        self.context = context or ""
        self.session_id = str(session_id or "").strip()
        self.created_at = ""
        self.messages: List[Dict[str, Any]] = []
        self.timeout_ms = timeout_ms
        self.http_session = http_session
        self.env = env
        self.config_loader = config_loader
        self.auto_persist = persist
        self.store = SessionStore(self.workspace_root)

    # -------------------------------------------------------------------------
    # Running tasks
    # -------------------------------------------------------------------------

    def _invoke(self, prompt, system_context, timeout_ms, signal, on_delta, log) -> TaskResult:
        return run_task(
            workspace_root=self.workspace_root,
            prompt=prompt,
            system_prompt=system_context,
            provider=self.provider,
            model=self.model,
            prior_messages=self.messages,
            session_id=self.session_id,
            timeout_ms=timeout_ms,
            signal=signal,
            on_stream_delta=on_delta,
            on_tool_event=log,
            http_session=self.http_session,
            env=self.env,
            config_loader=self.config_loader,
        )

    def run(
        self,
        task: str,
        on_delta: Optional[Callable[[str], None]] = None,
        on_tool_log: Optional[Callable[[ToolEvent], None]] = None,
        signal: Optional[threading.Event] = None,
    ) -> SessionResult:
        task_text = str(task or "").strip()
        if not task_text:
            return SessionResult(ok=False, error="empty task")

        logs: List[ToolEvent] = []
        streamed = False

        def log(event: ToolEvent):
            logs.append(event)
            if on_tool_log is not None:
                try:
                    on_tool_log(event)
                except Exception:
                    logger.warning("tool log observer failed", exc_info=True)

        def stream(delta: str):
            nonlocal streamed
            streamed = True
            if on_delta is not None:
                on_delta(delta)

        prompt = task_text
        preflight = ""
        if is_project_analysis_task(task_text):
            preflight = build_preflight_context(self.workspace_root, log)
            prompt = f"{task_text}\n\n{ANALYSIS_REQUIREMENTS}"
        system_context = "\n\n".join(part for part in (self.context.strip(), preflight) if part)

        result = self._invoke(prompt, system_context, self.timeout_ms, signal, stream, log)
        if not result.ok and result.error_code == "timeout":
            retry_ms = extended_timeout_ms(self.timeout_ms)
            logger.info("task timed out, retrying once with %dms", retry_ms)
            result = self._invoke(prompt, system_context, retry_ms, signal, stream, log)

        if not result.ok:
            return SessionResult(
                ok=False,
                error=enrich_error(result.error),
                cancelled=result.cancelled,
                streamed=streamed,
                logs=logs,
            )

        self.session_id = result.session_id or self.session_id
        self.messages = result.messages
        if self.auto_persist:
            saved = self.persist()
            if not saved.ok:
                logger.warning("session not saved: %s", saved.error)

        summary = extract_json_summary(result.output).strip() or fallback_summary(logs)
        return SessionResult(ok=True, summary=summary, streamed=streamed, logs=logs)

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            session_id=resolve_session_id(self.session_id),
            workspace_root=self.workspace_root,
            provider=self.provider,
            model=self.model,
            context=self.context,
            messages=self.messages,
            created_at=self.created_at,
        )

    def persist(self) -> SaveResult:
        saved = self.store.save(self.snapshot())
        if saved.ok:
            self.session_id = saved.session_id
            if saved.snapshot and saved.snapshot.created_at:
                self.created_at = saved.snapshot.created_at
        return saved

    def resume(self, session_id: str) -> LoadResult:
        loaded = self.store.load(session_id)
        if not loaded.ok:
            return loaded
        snapshot = loaded.snapshot
        self.session_id = snapshot.session_id
        self.provider = normalize_provider(snapshot.provider)
        self.model = snapshot.model
        self.context = snapshot.context
        self.messages = snapshot.messages
        self.created_at = snapshot.created_at
        logger.info("resumed %s (%d messages)", self.session_id, len(self.messages))
        return loaded

    def reset(self):
        self.session_id = ""
        self.created_at = ""
        self.messages = []


# =============================================================================
# Bus
# =============================================================================

def run_bus_once(
    session: AgentSession,
    subscriber: str = "",
    shell: Optional[Shell] = None,
    workspace_root: str = "",
    on_message: Optional[Callable[[QueueTask], None]] = None,
    env: Optional[Mapping[str, str]] = None,
) -> Dict[str, Any]:
    """Answer every message waiting in this agent's bus queue, once."""
    root = resolve_project_root(workspace_root or session.workspace_root, env=env)
    client = BusClient(root, shell=shell, env=env)

    subscriber_id = client.resolve_subscriber_id(subscriber)
    if not subscriber_id:
        return {
            "ok": False,
            "summary": "",
            "error": "failed to resolve bus subscriber id",
            "handled": 0,
            "subscriber_id": "",
        }

    consumer = QueueConsumer(
        run_task=session.run,
        send_reply=client.send_reply,
        format_reply=format_result,
        on_message=on_message,
    )
    report = consumer.drain_and_process(client.pending_file(subscriber_id))

    if report.handled:
        summary = f"ubus: handled {report.handled} message(s) for {subscriber_id}."
    else:
        summary = f"ubus: no pending messages for {subscriber_id}."
    return {
        "ok": report.ok,
        "summary": summary,
        "error": "; ".join(report.errors),
        "handled": report.handled,
        "subscriber_id": subscriber_id,
    }
