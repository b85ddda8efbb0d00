"""
Server-sent event decoding and per-turn stream accumulators.

An event-stream body is a sequence of blocks separated by a blank line.
Each block carries an optional `event:` name and one or more `data:` lines.
Chunks from the socket can end anywhere, including inside a multi-byte
character, so bytes go through an incremental UTF-8 decoder and only whole
blocks are handed out; the unterminated tail stays buffered.
"""
import re
import json
import codecs
import uuid
from dataclasses import dataclass, field
from typing import Dict, Any, List, Optional, Iterator, Tuple

DONE = "[DONE]"

_BLOCK_SEPARATOR = re.compile(r"\r?\n\r?\n")
_LINE_SEPARATOR = re.compile(r"\r?\n")


@dataclass
class SSEEvent:
    event: str = "message"
    data: str = ""

    @property
    def is_done(self) -> bool:
        return self.data == DONE

    def json(self) -> Optional[Dict[str, Any]]:
        """Parsed data payload, or None when it is not a JSON object."""
        return parse_json_object(self.data)


def parse_json_object(text: str) -> Optional[Dict[str, Any]]:
    try:
        value = json.loads(text)
    except (TypeError, ValueError):
        return None
    return value if isinstance(value, dict) else None


def split_blocks(text: str) -> Tuple[List[str], str]:
    """Split buffered text into complete blocks and the unterminated rest."""
    parts = _BLOCK_SEPARATOR.split(text)
    if len(parts) <= 1:
        return [], text
    return parts[:-1], parts[-1]


def parse_event_block(block: str) -> SSEEvent:
    event = "message"
    data = []
    for line in _LINE_SEPARATOR.split(block):
        if not line:
            continue
        if line.startswith("event:"):
            event = line[6:].strip() or "message"
        elif line.startswith("data:"):
            data.append(line[5:].lstrip())
    return SSEEvent(event=event, data="\n".join(data))


class SSEDecoder:
    """Incremental bytes -> SSEEvent decoder.

    Usage:
        decoder = SSEDecoder()
        for chunk in response.iter_content(chunk_size=None):
            for event in decoder.feed(chunk):
                ...
        for event in decoder.flush():
            ...
    """

    def __init__(self):
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, chunk) -> Iterator[SSEEvent]:
        if isinstance(chunk, bytes):
            self._buffer += self._decoder.decode(chunk)
        else:
            self._buffer += chunk or ""
        blocks, self._buffer = split_blocks(self._buffer)
        for block in blocks:
            yield parse_event_block(block)

    def flush(self) -> Iterator[SSEEvent]:
        """Parse whatever is left once the stream has ended."""
        self._buffer += self._decoder.decode(b"", final=True)
        rest, self._buffer = self._buffer, ""
        if rest.strip():
            yield parse_event_block(rest)


# =============================================================================
# Tool call accumulation
# =============================================================================

def parse_tool_args(raw: Any) -> Dict[str, Any]:
    """Tool arguments as a dict; anything unparseable becomes {}."""
    if isinstance(raw, dict):
        return raw
    text = str(raw or "").strip()
    if not text:
        return {}
    return parse_json_object(text) or {}


@dataclass
class ToolCall:
    """One assembled tool-call request from the model."""
    id: str
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)

    @property
    def arguments_json(self) -> str:
        return json.dumps(self.arguments, ensure_ascii=False)


@dataclass
class TurnResult:
    """What one provider turn produced."""
    text: str = ""
    tool_calls: List[ToolCall] = field(default_factory=list)
    # messages dialect only: the ordered content blocks to echo back
    assistant_content: Optional[List[Dict[str, Any]]] = None


@dataclass
class _PartialFunctionCall:
    id: str = ""
    name: str = ""
    arguments: str = ""


class ChatCompletionAccumulator:
    """Collects text and indexed tool-call fragments of a chat-completions stream."""

    def __init__(self):
        self.text = ""
        self._calls: Dict[int, _PartialFunctionCall] = {}

    def add_chunk(self, chunk: Dict[str, Any]) -> str:
        """Fold one streamed chunk in; return the text delta it carried."""
        choices = chunk.get("choices")
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            return ""
        delta = choices[0].get("delta")
        if not isinstance(delta, dict):
            return ""

        text = delta.get("content")
        text = text if isinstance(text, str) else ""
        self.text += text

        for part in delta.get("tool_calls") or []:
            if not isinstance(part, dict):
                continue
            index = part.get("index")
            index = index if isinstance(index, int) and not isinstance(index, bool) else 0
            call = self._calls.setdefault(index, _PartialFunctionCall())
            if isinstance(part.get("id"), str) and part["id"]:
                call.id = part["id"]
            function = part.get("function")
            if isinstance(function, dict):
                if isinstance(function.get("name"), str) and function["name"]:
                    call.name = function["name"]
                if isinstance(function.get("arguments"), str):
                    call.arguments += function["arguments"]
        return text

    def tool_calls(self) -> List[ToolCall]:
        return [
            ToolCall(
                id=call.id or f"call_{uuid.uuid4()}",
                name=call.name,
                arguments=parse_tool_args(call.arguments),
            )
            for _, call in sorted(self._calls.items())
        ]

    def result(self) -> TurnResult:
        return TurnResult(text=self.text, tool_calls=self.tool_calls())


@dataclass
class _ContentBlock:
    type: str = "text"
    text: str = ""
    id: str = ""
    name: str = ""
    input: Dict[str, Any] = field(default_factory=dict)
    input_json: str = ""


class MessagesAccumulator:
    """Collects indexed content blocks of a messages-dialect stream."""

    def __init__(self):
        self.text = ""
        self._blocks: Dict[int, _ContentBlock] = {}

    @staticmethod
    def _index(payload: Dict[str, Any]) -> int:
        index = payload.get("index")
        return index if isinstance(index, int) and not isinstance(index, bool) else 0

    def start_block(self, payload: Dict[str, Any]) -> None:
        block = payload.get("content_block")
        if not isinstance(block, dict):
            return
        index = self._index(payload)
        if block.get("type") == "text":
            self._blocks[index] = _ContentBlock(type="text", text=str(block.get("text") or ""))
        elif block.get("type") == "tool_use":
            inline = block.get("input")
            self._blocks[index] = _ContentBlock(
                type="tool_use",
                id=str(block.get("id") or ""),
                name=str(block.get("name") or ""),
                input=dict(inline) if isinstance(inline, dict) else {},
            )

    def add_delta(self, payload: Dict[str, Any]) -> str:
        """Fold one content_block_delta in; return the text delta it carried."""
        delta = payload.get("delta")
        if not isinstance(delta, dict):
            return ""
        index = self._index(payload)
        current = self._blocks.setdefault(index, _ContentBlock())

        if delta.get("type") == "text_delta":
            text = str(delta.get("text") or "")
            current.type = "text"
            current.text += text
            self.text += text
            return text
        if delta.get("type") == "input_json_delta":
            current.type = "tool_use"
            current.input_json += str(delta.get("partial_json") or "")
        return ""

    def content(self) -> List[Dict[str, Any]]:
        blocks = []
        for _, block in sorted(self._blocks.items()):
            if block.type == "text":
                blocks.append({"type": "text", "text": block.text})
                continue
            merged = dict(block.input)
            merged.update(parse_tool_args(block.input_json))
            blocks.append({
                "type": "tool_use",
                "id": block.id or f"tool_{uuid.uuid4()}",
                "name": block.name,
                "input": merged,
            })
        return blocks

    def result(self) -> TurnResult:
        content = self.content()
        text = self.text or "".join(b["text"] for b in content if b["type"] == "text")
        return TurnResult(
            text=text,
            tool_calls=tool_calls_from_content(content),
            assistant_content=content,
        )


def normalize_message_content(raw: Any) -> List[Dict[str, Any]]:
    """Keep only text and tool_use blocks of a messages-dialect content list."""
    if not isinstance(raw, list):
        return []
    blocks = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        if item.get("type") == "text":
            blocks.append({"type": "text", "text": str(item.get("text") or "")})
        elif item.get("type") == "tool_use":
            inline = item.get("input")
            blocks.append({
                "type": "tool_use",
                "id": str(item.get("id") or ""),
                "name": str(item.get("name") or ""),
                "input": inline if isinstance(inline, dict) else {},
            })
    return blocks


def tool_calls_from_content(content: List[Dict[str, Any]]) -> List[ToolCall]:
    return [
        ToolCall(
            id=str(block.get("id") or f"tool_{uuid.uuid4()}"),
            name=str(block.get("name") or ""),
            arguments=block.get("input") if isinstance(block.get("input"), dict) else {},
        )
        for block in content
        if block.get("type") == "tool_use"
    ]
