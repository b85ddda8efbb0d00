"""
Tool collection package.

The runtime exposes exactly four tools to the model:
- read (file_ops.py): line-range reads of text files
- write (file_ops.py): overwrite or append
- edit (file_ops.py): literal find/replace
- bash (shell.py): one shell command with a timeout

All of them resolve paths against the workspace root and never raise.
"""

from .atomic import (
    ReadTool,
    WriteTool,
    EditTool,
    BashTool,
    resolve_workspace_path,
)

from .registry import (
    ToolName,
    ToolRegistry,
    ToolResult,
    BaseTool,
    SUPPORTED_TOOLS,
    clip_text,
    create_core_registry,
    run_tool_call,
)

__all__ = [
    # Tool classes
    "ReadTool",
    "WriteTool",
    "EditTool",
    "BashTool",
    "resolve_workspace_path",
    # Registry
    "ToolName",
    "ToolRegistry",
    "ToolResult",
    "BaseTool",
    "SUPPORTED_TOOLS",
    "clip_text",
    "create_core_registry",
    "run_tool_call",
]
