"""
Shell execution tool.

Runs one command through the shell in the workspace root with a hard
timeout. Output is captured whole; the caller clips it when it is fed
back to the model.
"""

from __future__ import annotations

import logging
import subprocess
from typing import Dict, Any

from ..registry import BaseTool, ToolResult, ToolName
from .file_ops import normalize_workspace_root, _as_int
from ...defaults import DEFAULT_BASH_TIMEOUT_MS, MIN_BASH_TIMEOUT_MS

logger = logging.getLogger(__name__)


def _text(value) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


class BashTool(BaseTool):
    """Execute a single shell command."""

    name = ToolName.BASH.value
    description = "Run one shell command in workspace."
    parameters = {
        "type": "object",
        "properties": {
            "command": {"type": "string"},
            "timeoutMs": {"type": "integer"},
        },
        "required": ["command"],
    }

    def run(self, args: Dict[str, Any]) -> ToolResult:
        command = str(args.get("command") or "").strip()
        if not command:
            return ToolResult.failure("command is required")

        root = normalize_workspace_root(self.workspace_root)
        timeout_ms = _as_int(args.get("timeoutMs"))
        timeout_ms = max(MIN_BASH_TIMEOUT_MS, timeout_ms) if timeout_ms is not None else DEFAULT_BASH_TIMEOUT_MS

        try:
            result = subprocess.run(
                command,
                shell=True,
                capture_output=True,
                text=True,
                timeout=timeout_ms / 1000.0,
                cwd=root,
            )
        except subprocess.TimeoutExpired as e:
            logger.info("bash timed out after %dms: %s", timeout_ms, command)
            return ToolResult.failure(
                f"command timed out after {timeout_ms}ms",
                workspaceRoot=root,
                code=-1,
                stdout=_text(e.stdout),
                stderr=_text(e.stderr),
            )

        code = result.returncode
        return ToolResult(
            ok=code == 0,
            error="" if code == 0 else f"command exited with {code}",
            workspaceRoot=root,
            code=code,
            stdout=result.stdout or "",
            stderr=result.stderr or "",
        )
