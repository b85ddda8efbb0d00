"""
Core Agent Loop - the tool-calling conversation engine

This implements the classic agent loop:
    while(has_tool_calls):
        execute_tools()
        feed_results_to_llm()

Guards (cancellation, wall-clock budget) are checked before every turn.
Errors never escape run_task(); they come back as TaskResult(ok=False).
"""
import time
import uuid
import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, Any, List, Optional, Callable, Mapping

import requests

from .config import resolve_runtime_config
from .defaults import DEFAULT_TASK_TIMEOUT_MS
from .errors import UcodeError, TaskCancelled, TaskTimeout
from .llm import BaseTransport, create_transport, normalize_timeout_ms
from .streaming import ToolCall
from .tools import ToolName, ToolRegistry, ToolResult, create_core_registry

logger = logging.getLogger(__name__)


@dataclass
class ToolEvent:
    """Emitted to observers around each tool execution."""
    tool: str
    phase: str  # "start" | "error"
    args: Dict[str, Any] = field(default_factory=dict)
    error: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"tool": self.tool, "phase": self.phase, "args": dict(self.args), "error": self.error}


@dataclass
class TaskResult:
    """Outcome of one natural-language task."""
    ok: bool
    output: str = ""
    error: str = ""
    error_code: str = ""
    cancelled: bool = False
    messages: List[Dict[str, Any]] = field(default_factory=list)
    session_id: str = ""
    streamed: bool = False
    tool_calls_executed: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "output": self.output,
            "error": self.error,
            "errorCode": self.error_code,
            "cancelled": self.cancelled,
            "sessionId": self.session_id,
            "streamed": self.streamed,
            "toolCallsExecuted": self.tool_calls_executed,
        }


class Guards:
    """Cancellation and wall-clock budget for one task."""

    def __init__(self, signal: Optional[threading.Event] = None, timeout_ms: Any = DEFAULT_TASK_TIMEOUT_MS):
        self.signal = signal
        self.budget_ms = normalize_timeout_ms(timeout_ms)
        self.started_at = time.monotonic()

    def elapsed_ms(self) -> float:
        return (time.monotonic() - self.started_at) * 1000.0

    def ensure_active(self):
        if self.signal is not None and self.signal.is_set():
            raise TaskCancelled()
        if self.elapsed_ms() > self.budget_ms:
            raise TaskTimeout(f"timeout ({self.budget_ms}ms)")


def _emit(callback: Optional[Callable[[ToolEvent], None]], event: ToolEvent):
    if callback is None:
        return
    try:
        callback(event)
    except Exception:
        logger.warning("tool event observer failed", exc_info=True)


class AgentLoop:
    """
    Drives transport turns and tool execution until a turn asks for no tools.

    Implements: Ask -> Act -> Observe -> Repeat
    """

    def __init__(
        self,
        transport: BaseTransport,
        workspace_root: str = ".",
        tools: Optional[ToolRegistry] = None,
        on_stream_delta: Optional[Callable[[str], None]] = None,
        on_tool_event: Optional[Callable[[ToolEvent], None]] = None,
    ):
        self.transport = transport
        self.workspace_root = workspace_root
        self.tools = tools or create_core_registry(workspace_root)
        self.on_stream_delta = on_stream_delta
        self.on_tool_event = on_tool_event

        self.aggregated = ""
        self.streamed = False
        self.tool_calls_executed = 0
        self.messages: List[Dict[str, Any]] = []

    def _on_text(self, chunk: str):
        text = str(chunk or "")
        if not text:
            return
        self.aggregated += text
        if self.on_stream_delta is not None:
            self.streamed = True
            self.on_stream_delta(text)

    def execute_tool(self, call: ToolCall) -> ToolResult:
        """Run one requested tool, reporting start/error to the observer."""
        args = dict(call.arguments) if isinstance(call.arguments, dict) else {}
        name = ToolName.parse(call.name)
        if name is None:
            result = ToolResult.failure(f"unsupported tool: {call.name}")
            _emit(self.on_tool_event, ToolEvent(tool=str(call.name or "unknown"), phase="error", args=args, error=result.error))
            return result

        _emit(self.on_tool_event, ToolEvent(tool=name.value, phase="start", args=args))
        result = self.tools.execute(name, args)
        if not result.ok:
            logger.info("%s failed: %s", name.value, result.error)
            _emit(self.on_tool_event, ToolEvent(
                tool=name.value,
                phase="error",
                args=args,
                error=result.error or f"{name.value} failed",
            ))
        return result

    def run(
        self,
        prompt: str,
        system_prompt: str = "",
        history: Optional[List[Dict[str, Any]]] = None,
        guards: Optional[Guards] = None,
    ) -> str:
        """Run the loop to completion and return the model's text."""
        guards = guards or Guards()
        self.messages = self.transport.prepare_messages(history or [], system_prompt, prompt)

        while True:
            guards.ensure_active()

            result = self.transport.turn(
                self.messages,
                system_prompt=system_prompt,
                on_text_delta=self._on_text,
                signal=guards.signal,
                timeout_ms=guards.budget_ms,
            )

            if not result.tool_calls:
                final = self.transport.final_message(result)
                if final is not None:
                    self.messages.append(final)
                text = str(result.text or "").strip()
                if not self.aggregated.strip() and text:
                    self.aggregated = text
                return self.aggregated

            self.messages.append(self.transport.tool_call_message(result))

            outcomes = []
            for call in result.tool_calls:
                outcomes.append((call, self.execute_tool(call)))
                self.tool_calls_executed += 1
            self.messages.extend(self.transport.tool_result_messages(outcomes))


# =============================================================================
# Convenience Functions
# =============================================================================

def completed_summary(count: int) -> str:
    if count <= 0:
        return ""
    return f"Completed {count} tool call{'' if count == 1 else 's'}."


def run_task(
    workspace_root: str = ".",
    prompt: str = "",
    system_prompt: str = "",
    provider: str = "",
    model: str = "",
    prior_messages: Optional[List[Dict[str, Any]]] = None,
    session_id: str = "",
    timeout_ms: Any = DEFAULT_TASK_TIMEOUT_MS,
    signal: Optional[threading.Event] = None,
    on_stream_delta: Optional[Callable[[str], None]] = None,
    on_tool_event: Optional[Callable[[ToolEvent], None]] = None,
    http_session: Optional[requests.Session] = None,
    env: Optional[Mapping[str, str]] = None,
    config_loader: Optional[Callable[[str], Dict[str, str]]] = None,
) -> TaskResult:
    """
    Run one natural-language task through the agent loop.

    Example:
        result = run_task(".", "Summarize README.md", model="gpt-4.1-mini")
        print(result.output if result.ok else result.error)
    """
    guards = Guards(signal=signal, timeout_ms=timeout_ms)
    next_session_id = str(session_id or "").strip() or f"native-{uuid.uuid4()}"
    prompt_text = str(prompt or "").strip()
    loop = None

    try:
        guards.ensure_active()

        if not prompt_text:
            return TaskResult(ok=False, error="empty task", error_code="error", session_id=next_session_id)

        runtime = resolve_runtime_config(
            workspace_root,
            provider=provider,
            model=model,
            env=env,
            config_loader=config_loader,
        )
        tools = create_core_registry(workspace_root)
        transport = create_transport(runtime, session=http_session, tools=tools)
        logger.info("task via %s model=%s url=%s", transport.name, transport.model, transport.url)

        loop = AgentLoop(
            transport,
            workspace_root=workspace_root,
            tools=tools,
            on_stream_delta=on_stream_delta,
            on_tool_event=on_tool_event,
        )
        text = loop.run(prompt_text, system_prompt=system_prompt, history=prior_messages, guards=guards)

        output = text.strip() or completed_summary(loop.tool_calls_executed)
        return TaskResult(
            ok=True,
            output=output,
            messages=loop.messages,
            session_id=next_session_id,
            streamed=loop.streamed,
            tool_calls_executed=loop.tool_calls_executed,
        )

    except UcodeError as e:
        logger.warning("task failed (%s): %s", e.code, e)
        return TaskResult(
            ok=False,
            error=str(e) or e.code,
            error_code=e.code,
            cancelled=isinstance(e, TaskCancelled),
            session_id=next_session_id,
            streamed=bool(loop and loop.streamed),
            tool_calls_executed=loop.tool_calls_executed if loop else 0,
        )
    except Exception as e:
        logger.exception("task failed unexpectedly")
        return TaskResult(
            ok=False,
            error=str(e) or "native runner failed",
            error_code="error",
            session_id=next_session_id,
            streamed=bool(loop and loop.streamed),
            tool_calls_executed=loop.tool_calls_executed if loop else 0,
        )
