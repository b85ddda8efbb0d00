from __future__ import annotations

import json
from typing import Any, Dict, Iterable, List, Optional

import pytest


def sse(*events: Any, done: bool = False) -> bytes:
    """Encode events as an event-stream body.

    Each event is either a dict (sent as a bare `data:` line) or an
    (event_name, dict) pair.
    """
    blocks = []
    for item in events:
        if isinstance(item, tuple):
            name, payload = item
            blocks.append(f"event: {name}\ndata: {json.dumps(payload)}\n\n")
        else:
            blocks.append(f"data: {json.dumps(item)}\n\n")
    if done:
        blocks.append("data: [DONE]\n\n")
    return "".join(blocks).encode("utf-8")


def chunked(body: bytes, size: int = 7) -> List[bytes]:
    return [body[i:i + size] for i in range(0, len(body), size)]


class FakeResponse:
    def __init__(
        self,
        status_code: int = 200,
        chunks: Iterable[bytes] = (),
        headers: Optional[Dict[str, str]] = None,
        text: str = "",
        body: Any = None,
    ):
        self.status_code = status_code
        self.headers = headers if headers is not None else {"content-type": "text/event-stream"}
        self._chunks = list(chunks)
        self.text = text
        self._body = body
        self.closed = False

    def iter_content(self, chunk_size=None):
        yield from self._chunks

    def json(self):
        if self._body is None:
            raise ValueError("no json body")
        return self._body

    def close(self):
        self.closed = True


class FakeSession:
    """requests.Session stand-in returning queued responses in order."""

    def __init__(self, *responses: Any):
        self.responses = list(responses)
        self.calls: List[Dict[str, Any]] = []

    def queue(self, response: Any):
        self.responses.append(response)

    def post(self, url, headers=None, data=None, stream=False, timeout=None):
        self.calls.append({
            "url": url,
            "headers": dict(headers or {}),
            "payload": json.loads(data) if data else None,
            "stream": stream,
            "timeout": timeout,
        })
        if not self.responses:
            raise AssertionError("unexpected provider request")
        response = self.responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        return response


def openai_text_stream(*parts: str) -> FakeResponse:
    events = [{"choices": [{"delta": {"content": p}}]} for p in parts]
    return FakeResponse(chunks=chunked(sse(*events, done=True)))


def openai_tool_stream(call_id: str, name: str, arguments: Dict[str, Any]) -> FakeResponse:
    raw = json.dumps(arguments)
    half = len(raw) // 2
    events = [
        {"choices": [{"delta": {"tool_calls": [
            {"index": 0, "id": call_id, "function": {"name": name, "arguments": raw[:half]}},
        ]}}]},
        {"choices": [{"delta": {"tool_calls": [
            {"index": 0, "function": {"arguments": raw[half:]}},
        ]}}]},
    ]
    return FakeResponse(chunks=chunked(sse(*events, done=True)))


def anthropic_text_stream(*parts: str) -> FakeResponse:
    events = [("content_block_start", {"index": 0, "content_block": {"type": "text", "text": ""}})]
    events += [
        ("content_block_delta", {"index": 0, "delta": {"type": "text_delta", "text": p}})
        for p in parts
    ]
    events.append(("message_stop", {"type": "message_stop"}))
    return FakeResponse(chunks=chunked(sse(*events)))


def anthropic_tool_stream(tool_id: str, name: str, arguments: Dict[str, Any]) -> FakeResponse:
    raw = json.dumps(arguments)
    events = [
        ("content_block_start", {"index": 0, "content_block": {
            "type": "tool_use", "id": tool_id, "name": name, "input": {},
        }}),
        ("content_block_delta", {"index": 0, "delta": {"type": "input_json_delta", "partial_json": raw[:3]}}),
        ("content_block_delta", {"index": 0, "delta": {"type": "input_json_delta", "partial_json": raw[3:]}}),
        ("message_stop", {"type": "message_stop"}),
    ]
    return FakeResponse(chunks=chunked(sse(*events)))


def static_config(**values: str):
    return lambda root: dict(values)


@pytest.fixture
def workspace(tmp_path):
    root = tmp_path / "ws"
    root.mkdir()
    return root


@pytest.fixture
def openai_env():
    return {
        "UFOO_UCODE_PROVIDER": "openai",
        "UFOO_UCODE_MODEL": "gpt-test",
        "UFOO_UCODE_BASE_URL": "https://llm.example/v1",
        "UFOO_UCODE_API_KEY": "sk-test",
    }


@pytest.fixture
def anthropic_env():
    return {
        "UFOO_UCODE_PROVIDER": "anthropic",
        "UFOO_UCODE_MODEL": "claude-test",
        "UFOO_UCODE_BASE_URL": "https://api.anthropic.com/v1",
        "UFOO_UCODE_API_KEY": "ak-test",
    }
