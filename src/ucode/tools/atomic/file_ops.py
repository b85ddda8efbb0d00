"""
File tools - read, write, edit inside the workspace root.

Every path is resolved against the workspace root and refused if the
result lands outside it. Tools never raise; failures come back as
ToolResult(ok=False, error=...).
"""

from __future__ import annotations

import os
import re
from typing import Dict, Any, Optional, Tuple

from ..registry import BaseTool, ToolResult, ToolName
from ...defaults import DEFAULT_READ_MAX_BYTES, MIN_READ_MAX_BYTES


class WorkspacePathError(ValueError):
    pass


def normalize_workspace_root(workspace_root: Optional[str] = None) -> str:
    base = str(workspace_root or "").strip()
    return os.path.abspath(base or os.getcwd())


def resolve_workspace_path(workspace_root: str, target: Any) -> Tuple[str, str]:
    """Return (root, absolute path) for `target`, or raise WorkspacePathError."""
    root = normalize_workspace_root(workspace_root)
    requested = str(target or "").strip()
    if not requested:
        raise WorkspacePathError("path is required")
    resolved = os.path.abspath(os.path.join(root, requested))
    if resolved != root and not resolved.startswith(root.rstrip(os.sep) + os.sep):
        raise WorkspacePathError("path escapes workspace root")
    return root, resolved


def _as_int(value: Any) -> Optional[int]:
    """Numbers only; bools and strings are treated as absent."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if value != value or value in (float("inf"), float("-inf")):
        return None
    return int(value)


def _path_arg(args: Dict[str, Any]) -> Any:
    return args.get("path") or args.get("file") or ""


class ReadTool(BaseTool):
    """Read a range of lines from a text file."""

    name = ToolName.READ.value
    description = "Read a text file from workspace."
    parameters = {
        "type": "object",
        "properties": {
            "path": {"type": "string"},
            "startLine": {"type": "integer"},
            "endLine": {"type": "integer"},
            "maxBytes": {"type": "integer"},
        },
        "required": ["path"],
    }

    def run(self, args: Dict[str, Any]) -> ToolResult:
        root, resolved = resolve_workspace_path(self.workspace_root, _path_arg(args))

        start_line = max(1, _as_int(args.get("startLine")) or 1)
        end_line = _as_int(args.get("endLine"))
        end_line = max(start_line, end_line) if end_line is not None else 0
        max_bytes = _as_int(args.get("maxBytes"))
        max_bytes = max(MIN_READ_MAX_BYTES, max_bytes) if max_bytes is not None else DEFAULT_READ_MAX_BYTES

        with open(resolved, "r", encoding="utf-8", errors="replace", newline="") as f:
            raw = f.read()
        lines = re.split(r"\r?\n", raw)

        stop = end_line if end_line > 0 else len(lines)
        content = "\n".join(lines[start_line - 1:stop])

        truncated = False
        encoded = content.encode("utf-8")
        if len(encoded) > max_bytes:
            # Drop a multi-byte character cut in half at the boundary
            content = encoded[:max_bytes].decode("utf-8", errors="ignore")
            truncated = True

        return ToolResult(
            ok=True,
            workspaceRoot=root,
            path=resolved,
            startLine=start_line,
            endLine=end_line if end_line > 0 else len(lines),
            totalLines=len(lines),
            truncated=truncated,
            content=content,
        )


class WriteTool(BaseTool):
    """Create, overwrite or append to a file."""

    name = ToolName.WRITE.value
    description = "Write content to a file in workspace."
    parameters = {
        "type": "object",
        "properties": {
            "path": {"type": "string"},
            "content": {"type": "string"},
            "append": {"type": "boolean"},
        },
        "required": ["path", "content"],
    }

    def run(self, args: Dict[str, Any]) -> ToolResult:
        content = args.get("content")
        content = "" if content is None else str(content)
        mode = str(args.get("mode") or "").strip().lower()
        append = mode == "append" or args.get("append") is True

        root, resolved = resolve_workspace_path(self.workspace_root, _path_arg(args))
        os.makedirs(os.path.dirname(resolved), exist_ok=True)
        with open(resolved, "a" if append else "w", encoding="utf-8", newline="") as f:
            f.write(content)

        return ToolResult(
            ok=True,
            workspaceRoot=root,
            path=resolved,
            mode="append" if append else "overwrite",
            bytes=os.path.getsize(resolved),
        )


class EditTool(BaseTool):
    """Literal find/replace in an existing file."""

    name = ToolName.EDIT.value
    description = "Replace text in a file in workspace."
    parameters = {
        "type": "object",
        "properties": {
            "path": {"type": "string"},
            "find": {"type": "string"},
            "replace": {"type": "string"},
            "all": {"type": "boolean"},
        },
        "required": ["path", "find", "replace"],
    }

    def run(self, args: Dict[str, Any]) -> ToolResult:
        find = str(args.get("find") or args.get("search") or "")
        replace = args.get("replace")
        replace = "" if replace is None else str(replace)
        if not find:
            return ToolResult.failure("find pattern is required")

        root, resolved = resolve_workspace_path(self.workspace_root, _path_arg(args))
        with open(resolved, "r", encoding="utf-8", newline="") as f:
            original = f.read()

        if args.get("all") is True:
            count = original.count(find)
            updated = original.replace(find, replace)
        else:
            count = 1 if find in original else 0
            updated = original.replace(find, replace, 1)

        changed = count > 0
        if changed:
            with open(resolved, "w", encoding="utf-8", newline="") as f:
                f.write(updated)

        return ToolResult(
            ok=True,
            workspaceRoot=root,
            path=resolved,
            changed=changed,
            replacements=count,
        )
