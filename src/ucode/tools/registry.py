"""
Tool Registry - the closed set of core workspace tools.

Exactly four tools exist: read, write, edit, bash. Dispatch goes through
the ToolName enum so an unknown name can never reach a tool; it comes back
as an "unknown tool" result instead.
"""

from __future__ import annotations

import json
import logging
from enum import Enum
from typing import Dict, Any, List, Optional

from ..defaults import TOOL_RESULT_CLIP_CHARS

logger = logging.getLogger(__name__)


class ToolName(str, Enum):
    READ = "read"
    WRITE = "write"
    EDIT = "edit"
    BASH = "bash"

    @classmethod
    def parse(cls, value: Any) -> Optional["ToolName"]:
        """Case-insensitive lookup; None for anything outside the closed set."""
        if isinstance(value, cls):
            return value
        text =str(value or "").strip().lower()
        for member in cls:
            if member.value == text:
                return member
        return None


SUPPORTED_TOOLS = [t.value for t in ToolName]


def clip_text(value: Any, max_chars: int = 6000) -> str:
    text = "" if value is None else str(value)
    if len(text) <= max_chars:
        return text
    return f"{text[:max_chars]}\n...[truncated]"


class ToolResult:
    """Result from tool execution.

    `ok` and `error` are always present; every other field is tool specific
    (path, content, stdout, replacements, ...) and kept in `fields`.
    """

    def __init__(self, ok: bool, error: str = "", **fields: Any):
        self.ok = ok
        self.error = error or ""
        self.fields = fields

    @classmethod
    def failure(cls, error: str, **fields: Any) -> "ToolResult":
        return cls(ok=False, error=error, **fields)

    def __getitem__(self, key: str) -> Any:
        if key == "ok":
            return self.ok
        if key == "error":
            return self.error
        return self.fields[key]

    def get(self, key: str, default: Any = None) -> Any:
        try:
            return self[key]
        except KeyError:
            return default

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"ok": self.ok}
        data.update(self.fields)
        if self.error or not self.ok:
            data["error"] = self.error
        return data

    def to_message(self, max_chars: int = TOOL_RESULT_CLIP_CHARS) -> str:
        """Format for LLM consumption."""
        return clip_text(json.dumps(self.to_dict(), ensure_ascii=False), max_chars)

    def __repr__(self):
        return f"ToolResult(ok={self.ok!r}, error={self.error!r}, fields={sorted(self.fields)!r})"


class BaseTool:
    """Base class for tools.

    Subclasses should define:
    - name: str - the tool name (a ToolName value)
    - description: str - what the tool does
    - parameters: dict - JSON schema for parameters
    - run(args) -> ToolResult - the implementation
    """

    name: str = ""
    description: str = ""
    parameters: Dict[str, Any] = {}

    def __init__(self, workspace_root: str = "."):
        self.workspace_root = workspace_root

    def run(self, args: Dict[str, Any]) -> ToolResult:
        raise NotImplementedError("Subclasses must implement run()")

    def execute(self, args: Optional[Dict[str, Any]] = None) -> ToolResult:
        """Run the tool; any exception becomes a failed result."""
        try:
            return self.run(dict(args or {}))
        except Exception as e:
            logger.debug("%s failed: %s", self.name, e)
            return ToolResult.failure(str(e) or f"{self.name} failed")

    def to_openai_spec(self) -> Dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }

    def to_anthropic_spec(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.parameters,
        }


class ToolRegistry:
    """Central registry for the core tools of one workspace."""

    def __init__(self, workspace_root: str = "."):
        self.workspace_root = workspace_root
        self._tools: Dict[ToolName, BaseTool] = {}

    def register(self, tool: BaseTool) -> None:
        name = ToolName.parse(tool.name)
        if name is None:
            raise ValueError(f"not a core tool: {tool.name}")
        self._tools[name] = tool

    def get(self, name: Any) -> Optional[BaseTool]:
        parsed = ToolName.parse(name)
        return self._tools.get(parsed) if parsed else None

    def list_tools(self) -> List[str]:
        return [n.value for n in self._tools]

    def openai_specs(self) -> List[Dict[str, Any]]:
        return [t.to_openai_spec() for t in self._tools.values()]

    def anthropic_specs(self) -> List[Dict[str, Any]]:
        return [t.to_anthropic_spec() for t in self._tools.values()]

    def execute(self, name: Any, args: Optional[Dict[str, Any]] = None) -> ToolResult:
        """Execute a tool by name. Never raises."""
        tool = self.get(name)
        if tool is None:
            return ToolResult.failure("unknown tool", supported_tools=list(SUPPORTED_TOOLS))
        if args is not None and not isinstance(args, dict):
            args = {}
        return tool.execute(args)


def create_core_registry(workspace_root: str = ".") -> ToolRegistry:
    """
    Create the registry with the four core tools.

    - read:  line-range file reads, byte capped
    - write: overwrite or append, parents created
    - edit:  literal find/replace, first or all occurrences
    - bash:  one shell command with a hard timeout
    """
    from .atomic.file_ops import ReadTool, WriteTool, EditTool
    from .atomic.shell import BashTool

    registry = ToolRegistry(workspace_root)
    registry.register(ReadTool(workspace_root))
    registry.register(WriteTool(workspace_root))
    registry.register(EditTool(workspace_root))
    registry.register(BashTool(workspace_root))
    return registry


def run_tool_call(name: Any, args: Optional[Dict[str, Any]], workspace_root: str = ".") -> ToolResult:
    """Dispatch one tool call against `workspace_root`."""
    tool = ToolName.parse(name)
    if tool is None:
        return ToolResult.failure("unknown tool", supported_tools=list(SUPPORTED_TOOLS))
    return create_core_registry(workspace_root).execute(tool, args)
