"""
LLM Interface - provider transports spoken directly over HTTP.

Two wire dialects are supported:

    openai-chat          chat-completions with incremental `delta` chunks
    anthropic-messages   messages API with typed content-block events

Both send one streaming POST per turn through `requests`, decode the
event stream incrementally, forward text deltas to a caller-supplied sink
as they arrive and return the assembled TurnResult when the stream ends.
A transport also knows how its dialect records conversation history, so
the agent loop never branches on the provider.
"""
import re
import json
import time
import uuid
import logging
import threading
from typing import List, Dict, Any, Optional, Callable

import requests

from .config import RuntimeConfig
from .defaults import (
    DEFAULT_ANTHROPIC_BASE_URL,
    DEFAULT_TASK_TIMEOUT_MS,
    MIN_TASK_TIMEOUT_MS,
    ANTHROPIC_VERSION,
    ANTHROPIC_MAX_TOKENS,
    ERROR_BODY_CLIP_CHARS,
    TOOL_RESULT_CLIP_CHARS,
    TRANSPORT_ANTHROPIC_MESSAGES,
    TRANSPORT_OPENAI_CHAT,
)
from .errors import ConfigurationError, ProviderError, StreamError, TaskCancelled, TaskTimeout
from .streaming import (
    SSEDecoder,
    ToolCall,
    TurnResult,
    ChatCompletionAccumulator,
    MessagesAccumulator,
    normalize_message_content,
    parse_tool_args,
    tool_calls_from_content,
)
from .tools import ToolName, ToolRegistry, clip_text, create_core_registry

logger = logging.getLogger(__name__)

TextSink = Optional[Callable[[str], None]]


# =============================================================================
# Endpoint URLs
# =============================================================================

def _endpoint_url(base_url: str, endpoint: str) -> str:
    normalized = base_url.rstrip("/")
    if re.search(re.escape(endpoint) + r"$", normalized, re.IGNORECASE):
        return normalized
    if re.search(r"/v1$", normalized, re.IGNORECASE):
        return f"{normalized}{endpoint}"
    if re.search(r"/api$", normalized, re.IGNORECASE):
        return f"{normalized}/v1{endpoint}"
    return f"{normalized}{endpoint}"


def resolve_completion_url(base_url: str = "") -> str:
    raw = str(base_url or "").strip()
    if not raw:
        return ""
    return _endpoint_url(raw, "/chat/completions")


def resolve_anthropic_messages_url(base_url: str = "") -> str:
    raw = str(base_url or "").strip() or DEFAULT_ANTHROPIC_BASE_URL
    return _endpoint_url(raw, "/messages")


def normalize_timeout_ms(value: Any, default: int = DEFAULT_TASK_TIMEOUT_MS) -> int:
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return default
    if parsed != parsed or parsed in (float("inf"), float("-inf")):
        return default
    return max(MIN_TASK_TIMEOUT_MS, int(parsed))


# =============================================================================
# Transports
# =============================================================================

class BaseTransport:
    """One provider endpoint plus the conversation shape of its dialect.

    Subclasses implement payload/header construction, stream folding and
    the message-history hooks used by the agent loop.
    """

    name = ""

    def __init__(
        self,
        url: str,
        api_key: str = "",
        model: str = "",
        session: Optional[requests.Session] = None,
        tools: Optional[ToolRegistry] = None,
    ):
        self.url = url
        self.api_key = api_key
        self.model = model
        self.session = session or requests.Session()
        self.tools = tools or create_core_registry()

    # -------------------------------------------------------------------------
    # Wire
    # -------------------------------------------------------------------------

    def headers(self) -> Dict[str, str]:
        raise NotImplementedError

    def build_payload(self, messages: List[Dict[str, Any]], system_prompt: str = "") -> Dict[str, Any]:
        raise NotImplementedError

    def new_accumulator(self):
        raise NotImplementedError

    def fold_event(self, accumulator, event) -> str:
        """Apply one SSE event; return its text delta. Raise StreamError on error events."""
        raise NotImplementedError

    def parse_body(self, data: Dict[str, Any]) -> TurnResult:
        """Decode a non-streaming JSON response."""
        raise NotImplementedError

    def turn(
        self,
        messages: List[Dict[str, Any]],
        system_prompt: str = "",
        on_text_delta: TextSink = None,
        signal: Optional[threading.Event] = None,
        timeout_ms: int = DEFAULT_TASK_TIMEOUT_MS,
    ) -> TurnResult:
        """Run one request/response exchange with the provider."""
        budget_ms = normalize_timeout_ms(timeout_ms)
        deadline = time.monotonic() + budget_ms / 1000.0

        def check():
            if signal is not None and signal.is_set():
                raise TaskCancelled()
            if time.monotonic() > deadline:
                raise TaskTimeout(f"timeout ({budget_ms}ms)")

        check()
        payload = self.build_payload(messages, system_prompt)
        logger.debug("POST %s model=%s messages=%d", self.url, self.model, len(messages))

        response = None
        try:
            response = self.session.post(
                self.url,
                headers=self.headers(),
                data=json.dumps(payload),
                stream=True,
                timeout=budget_ms / 1000.0,
            )

            if not 200 <= response.status_code < 300:
                body = response.text or ""
                raise ProviderError(
                    f"provider request failed ({response.status_code}): "
                    f"{clip_text(body, ERROR_BODY_CLIP_CHARS)}",
                    status=response.status_code,
                )

            content_type = str(response.headers.get("content-type") or "").lower()
            if "application/json" in content_type:
                # gateway answered with one object instead of an event stream
                try:
                    data = response.json()
                except ValueError as e:
                    raise ProviderError(f"invalid provider response: {e}", status=response.status_code)
                result = self.parse_body(data if isinstance(data, dict) else {})
                if result.text and on_text_delta:
                    on_text_delta(result.text)
                return result

            accumulator = self.new_accumulator()
            decoder = SSEDecoder()
            finished = False
            for chunk in response.iter_content(chunk_size=None):
                check()
                for event in decoder.feed(chunk):
                    if self._apply(accumulator, event, on_text_delta):
                        finished = True
                        break
                if finished:
                    break
            if not finished:
                for event in decoder.flush():
                    self._apply(accumulator, event, on_text_delta)
            return accumulator.result()

        except requests.exceptions.Timeout:
            raise TaskTimeout(f"timeout ({budget_ms}ms)")
        except requests.exceptions.RequestException as e:
            if time.monotonic() > deadline:
                raise TaskTimeout(f"timeout ({budget_ms}ms)")
            if signal is not None and signal.is_set():
                raise TaskCancelled()
            raise ProviderError(f"network error: {e}")
        finally:
            if response is not None:
                response.close()

    def _apply(self, accumulator, event, on_text_delta: TextSink) -> bool:
        """Fold one event; True once the stream terminator has been seen."""
        if not event.data:
            return False
        if event.is_done:
            return True
        text = self.fold_event(accumulator, event)
        if text and on_text_delta:
            on_text_delta(text)
        return event.event == "message_stop"

    # -------------------------------------------------------------------------
    # Conversation hooks
    # -------------------------------------------------------------------------

    def prepare_messages(
        self,
        history: List[Dict[str, Any]],
        system_prompt: str,
        prompt: str,
    ) -> List[Dict[str, Any]]:
        messages = clone_messages(history)
        messages.append({"role": "user", "content": prompt})
        return messages

    def final_message(self, result: TurnResult) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def tool_call_message(self, result: TurnResult) -> Dict[str, Any]:
        raise NotImplementedError

    def tool_result_messages(self, outcomes: List[tuple]) -> List[Dict[str, Any]]:
        """`outcomes` is a list of (ToolCall, ToolResult) pairs in call order."""
        raise NotImplementedError


class OpenAIChatTransport(BaseTransport):
    """Chat-completions dialect (OpenAI and compatible gateways)."""

    name = TRANSPORT_OPENAI_CHAT

    def headers(self) -> Dict[str, str]:
        headers = {"content-type": "application/json"}
        if self.api_key:
            headers["authorization"] = f"Bearer {self.api_key}"
        return headers

    def build_payload(self, messages, system_prompt=""):
        return {
            "model": self.model,
            "messages": messages,
            "tools": self.tools.openai_specs(),
            "tool_choice": "auto",
            "stream": True,
            "temperature": 0,
        }

    def new_accumulator(self):
        return ChatCompletionAccumulator()

    def fold_event(self, accumulator, event):
        chunk = event.json()
        if chunk is None:
            return ""
        error = chunk.get("error")
        if event.event == "error" or isinstance(error, dict):
            message = error.get("message") if isinstance(error, dict) else ""
            raise StreamError(str(message or "provider stream error"))
        return accumulator.add_chunk(chunk)

    def parse_body(self, data):
        choices = data.get("choices")
        message = {}
        if isinstance(choices, list) and choices and isinstance(choices[0], dict):
            message = choices[0].get("message") or {}
        text = message.get("content") if isinstance(message.get("content"), str) else ""
        calls = []
        for raw in message.get("tool_calls") or []:
            if not isinstance(raw, dict) or not isinstance(raw.get("function"), dict):
                continue
            function = raw["function"]
            calls.append(ToolCall(
                id=str(raw.get("id") or ""),
                name=str(function.get("name") or ""),
                arguments=parse_tool_args(function.get("arguments")),
            ))
        return TurnResult(text=text, tool_calls=_ensure_ids(calls, "call"))

    def prepare_messages(self, history, system_prompt, prompt):
        messages = clone_messages(history)
        system_text = str(system_prompt or "").strip()
        has_system = any(str(m.get("role") or "").strip() == "system" for m in messages)
        if system_text and not has_system:
            messages.insert(0, {"role": "system", "content": system_text})
        messages.append({"role": "user", "content": prompt})
        return messages

    def final_message(self, result):
        text = str(result.text or "").strip()
        if not text:
            return None
        return {"role": "assistant", "content": text}

    def tool_call_message(self, result):
        return {
            "role": "assistant",
            "content": None,
            "tool_calls": [
                {
                    "id": call.id,
                    "type": "function",
                    "function": {
                        "name": _tool_name(call.name),
                        "arguments": call.arguments_json,
                    },
                }
                for call in result.tool_calls
            ],
        }

    def tool_result_messages(self, outcomes):
        return [
            {
                "role": "tool",
                "tool_call_id": call.id,
                "content": tool_result.to_message(TOOL_RESULT_CLIP_CHARS),
            }
            for call, tool_result in outcomes
        ]


class AnthropicMessagesTransport(BaseTransport):
    """Messages dialect (Anthropic and compatible gateways)."""

    name = TRANSPORT_ANTHROPIC_MESSAGES

    def headers(self) -> Dict[str, str]:
        headers = {
            "content-type": "application/json",
            "anthropic-version": ANTHROPIC_VERSION,
        }
        if self.api_key:
            headers["x-api-key"] = self.api_key
        return headers

    def build_payload(self, messages, system_prompt=""):
        payload = {
            "model": self.model,
            "max_tokens": ANTHROPIC_MAX_TOKENS,
            "messages": messages,
            "tools": self.tools.anthropic_specs(),
            "stream": True,
        }
        system_text = str(system_prompt or "").strip()
        if system_text:
            payload["system"] = system_text
        return payload

    def new_accumulator(self):
        return MessagesAccumulator()

    def fold_event(self, accumulator, event):
        payload = event.json()
        if payload is None:
            return ""
        if event.event == "error" or payload.get("type") == "error":
            error = payload.get("error")
            message = error.get("message") if isinstance(error, dict) else ""
            raise StreamError(str(message or "anthropic stream error"))
        if event.event == "content_block_start":
            accumulator.start_block(payload)
        elif event.event == "content_block_delta":
            return accumulator.add_delta(payload)
        return ""

    def parse_body(self, data):
        content = normalize_message_content(data.get("content"))
        for block in content:
            if block["type"] == "tool_use" and not block["id"]:
                block["id"] = f"tool_{uuid.uuid4()}"
        text = "".join(b["text"] for b in content if b["type"] == "text")
        return TurnResult(
            text=text,
            tool_calls=tool_calls_from_content(content),
            assistant_content=content,
        )

    def final_message(self, result):
        if result.assistant_content:
            return {"role": "assistant", "content": result.assistant_content}
        if str(result.text or "").strip():
            return {"role": "assistant", "content": [{"type": "text", "text": result.text}]}
        return None

    def tool_call_message(self, result):
        return {"role": "assistant", "content": list(result.assistant_content or [])}

    def tool_result_messages(self, outcomes):
        return [{
            "role": "user",
            "content": [
                {
                    "type": "tool_result",
                    "tool_use_id": call.id,
                    "content": tool_result.to_message(TOOL_RESULT_CLIP_CHARS),
                    "is_error": not tool_result.ok,
                }
                for call, tool_result in outcomes
            ],
        }]


# =============================================================================
# Helpers
# =============================================================================

def _tool_name(name: str) -> str:
    parsed = ToolName.parse(name)
    return parsed.value if parsed else str(name or "")


def _ensure_ids(calls: List[ToolCall], prefix: str) -> List[ToolCall]:
    for call in calls:
        if not call.id:
            call.id = f"{prefix}_{uuid.uuid4()}"
    return calls


def clone_messages(messages: Any) -> List[Dict[str, Any]]:
    """Deep copy through JSON; non-object entries are dropped."""
    if not isinstance(messages, list):
        return []
    try:
        copied = json.loads(json.dumps(messages))
    except (TypeError, ValueError):
        return []
    return [m for m in copied if isinstance(m, dict)]


def create_transport(
    config: RuntimeConfig,
    session: Optional[requests.Session] = None,
    tools: Optional[ToolRegistry] = None,
) -> BaseTransport:
    """Build the transport for a resolved runtime config.

    Raises ConfigurationError before any network traffic when the model or
    endpoint is missing.
    """
    model = str(config.model or "").strip()
    if not model:
        raise ConfigurationError("ucode model is not configured")

    if config.transport == TRANSPORT_ANTHROPIC_MESSAGES:
        url = resolve_anthropic_messages_url(config.base_url)
        cls = AnthropicMessagesTransport
    else:
        url = resolve_completion_url(config.base_url)
        cls = OpenAIChatTransport
    if not url:
        raise ConfigurationError("ucode baseUrl is not configured")

    return cls(url=url, api_key=config.api_key, model=model, session=session, tools=tools)
