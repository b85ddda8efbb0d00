"""
Atomic tools - the four workspace primitives.

- file_ops: read, write, edit (paths confined to the workspace root)
- shell: bash, one command with a hard timeout
"""

from .file_ops import ReadTool, WriteTool, EditTool, resolve_workspace_path
from .shell import BashTool

__all__ = [
    "ReadTool",
    "WriteTool",
    "EditTool",
    "BashTool",
    "resolve_workspace_path",
]
