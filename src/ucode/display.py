"""
Display Module - Clean, user-friendly output formatting

Handles all terminal output for the CLI: tool step lines, streamed model
text, final results and errors. Diagnostics go through `logging`, not here.
"""
import sys
from typing import Dict, Any, List, Optional, TextIO

from .agent import ToolEvent


# =============================================================================
# ANSI Color Codes
# =============================================================================

class Colors:
    """ANSI escape codes for terminal colors."""
    RESET = "\033[0m"
    BOLD = "\033[1m"
    DIM = "\033[2m"
    ITALIC = "\033[3m"
    # Foreground
    RED = "\033[31m"
    GREEN = "\033[32m"
    YELLOW = "\033[33m"
    CYAN = "\033[36m"
    WHITE = "\033[37m"
    # Bright variants
    BRIGHT_GREEN = "\033[92m"
    BRIGHT_CYAN = "\033[96m"


# =============================================================================
# Tool Labels - Map raw tool calls to human-readable messages
# =============================================================================

TOOL_LABELS = {
    "read": "Reading {path}",
    "write": "Writing {path}",
    "edit": "Editing {path}",
    "bash": "Running: {command}",
}

C = Colors

ICONS = {
    "success": f"{C.BRIGHT_GREEN}✓{C.RESET}",
    "error": f"{C.RED}✗{C.RESET}",
    "tool": f"{C.CYAN}→{C.RESET}",
}


# =============================================================================
# Display Class
# =============================================================================

class Display:
    """
    Centralized display manager for clean terminal output.

    Usage:
        display = Display()
        display.tool_event(ToolEvent(tool="read", phase="start", args={"path": "README.md"}))
        display.stream_delta("Hello")
        display.response("Done.")
    """

    def __init__(self, quiet: bool = False, color: Optional[bool] = None, stream: Optional[TextIO] = None):
        self.quiet = quiet
        self.out = stream or sys.stdout
        self.color = self.out.isatty() if color is None else color
        self._mid_stream = False

    def _paint(self, text: str, *codes: str) -> str:
        if not self.color or not codes:
            return text
        return "".join(codes) + text + C.RESET

    def _icon(self, name: str) -> str:
        if self.color:
            return ICONS[name]
        return {"success": "✓", "error": "✗", "tool": "→"}[name]

    def _print(self, text: str = "", file: Optional[TextIO] = None):
        self.end_stream()
        print(text, file=file or self.out, flush=True)

    # =========================================================================
    # Tool Display
    # =========================================================================

    def tool_event(self, event: ToolEvent):
        """One line per tool start, plus an error line when it fails."""
        if self.quiet:
            return
        if event.phase == "start":
            message = self._format_tool_message(event.tool, event.args)
            self._print(f"{self._icon('tool')} {self._paint(message, C.DIM)}")
        elif event.phase == "error":
            self._print(f"  {self._icon('error')} {self._paint(event.tool + ': ' + self._truncate(event.error, 100), C.RED)}")

    # =========================================================================
    # Streaming / Response Display
    # =========================================================================

    def stream_delta(self, text: str):
        """Write model text as it arrives."""
        if self.quiet or not text:
            return
        self.out.write(text)
        self.out.flush()
        self._mid_stream = True

    def end_stream(self):
        if self._mid_stream:
            self.out.write("\n")
            self.out.flush()
            self._mid_stream = False

    def response(self, text: str):
        """Display final response (printed even in quiet mode)."""
        self._print(text)

    # =========================================================================
    # Progress / Status
    # =========================================================================

    def status(self, message: str):
        if self.quiet:
            return
        self._print(self._paint(message, C.DIM))

    def session_list(self, sessions: List[Dict[str, Any]]):
        if not sessions:
            self._print("No saved sessions found.")
            return
        self._print("\nAvailable Sessions:")
        self._print("-" * 60)
        for s in sessions:
            updated = str(s.get("updated_at") or "")[:19]
            model = s.get("model") or "-"
            self._print(f"  {s['session_id']}  |  {updated}  |  {model}  |  {s.get('message_count', 0)} messages")

    # =========================================================================
    # Errors and Warnings
    # =========================================================================

    def error(self, message: str):
        """Display error message (always shown)."""
        line = f"{self._icon('error')} {self._paint('Error:', C.RED, C.BOLD)} {self._paint(message, C.RED)}"
        self._print(line, file=sys.stderr)

    def warning(self, message: str):
        if self.quiet:
            return
        self._print(self._paint(f"⚠ Warning: {message}", C.YELLOW))

    # =========================================================================
    # Helpers
    # =========================================================================

    def _format_tool_message(self, name: str, args: Dict[str, Any]) -> str:
        """Convert tool call to human-readable message."""
        template = TOOL_LABELS.get(name)
        if template is None:
            return f"{name}({self._summarize_args(args)})"
        try:
            return self._truncate(template.format(**args), 100)
        except (KeyError, IndexError):
            return f"{name}: {self._summarize_args(args)}"

    def _summarize_args(self, args: Dict[str, Any]) -> str:
        """Create brief summary of tool arguments."""
        if not args:
            return ""
        for key in ["path", "command", "find"]:
            if key in args:
                return self._truncate(str(args[key]), 50)
        first_key = next(iter(args))
        return f"{first_key}={self._truncate(str(args[first_key]), 40)}"

    def _truncate(self, text: str, max_len: int) -> str:
        """Truncate text with ellipsis."""
        if not text:
            return ""
        text = str(text).replace("\n", " ").strip()
        if len(text) <= max_len:
            return text
        return text[:max_len - 3] + "..."


# =============================================================================
# Convenience function
# =============================================================================

def create_display(quiet: bool = False) -> Display:
    return Display(quiet=quiet)
