#!/usr/bin/env python3
"""
ucode - a workspace coding agent that also answers tasks from the ufoo bus

Usage:
    ucode "Your task here"
    ucode --interactive
    ucode --provider anthropic --model claude-sonnet-4 "Your task"
    ucode --tool read --args-json '{"path": "README.md"}'
    ucode --ubus
"""
import os
import sys
import json
import signal
import logging
import argparse
import threading
from contextlib import contextmanager
from typing import Optional, List

from prompt_toolkit import prompt as pt_prompt
from prompt_toolkit.patch_stdout import patch_stdout

from . import __version__
from .config import normalize_provider, resolve_runtime_config
from .defaults import DEFAULT_TASK_TIMEOUT_MS
from .display import Display, create_display
from .session import AgentSession, build_system_context, format_result, run_bus_once
from .tools import SUPPORTED_TOOLS, run_tool_call

logger = logging.getLogger(__name__)

REPL_HELP = """Commands:
  help                          Show this help
  exit | quit                   Leave the REPL
  ubus | /ubus                  Answer pending bus messages once
  resume <session-id>           Load a saved session
  tool | run <name> <args-json> Run one core tool (read, write, edit, bash)
  <anything else>               Run it as a natural-language task
"""


def parse_args(argv: Optional[List[str]] = None):
    parser = argparse.ArgumentParser(
        prog="ucode",
        description="ucode - workspace coding agent for OpenAI and Anthropic compatible providers",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Run a task in a specific workspace
    ucode --workspace ~/my-project "Summarize the README"

    # Interactive mode
    ucode --workspace ~/my-project --interactive

    # Use Anthropic
    ucode --provider anthropic --model claude-sonnet-4 "Review main.py"

    # Run one tool directly
    ucode --tool bash --args-json '{"command": "git status"}'

    # Answer pending bus messages once
    ucode --ubus --subscriber ucode:1

    # Resume a session
    ucode --resume ucode-lz3k1x-1a2b3c4d "Continue"
"""
    )

    parser.add_argument("task", nargs="?", help="Task to execute (omit with --interactive, --ubus or --tool)")
    parser.add_argument("-i", "--interactive", action="store_true", help="Run in interactive REPL mode")
    parser.add_argument("-w", "--workspace", default=None, help="Workspace root (default: current directory)")
    parser.add_argument("--provider", default="", help="Provider: openai or anthropic")
    parser.add_argument("-m", "--model", default="", help="Model id")
    parser.add_argument("--system-prompt", metavar="TEXT_OR_PATH", default="", help="Extra system context (text or file)")
    parser.add_argument(
        "--append-system-prompt",
        metavar="TEXT_OR_PATH",
        default="",
        help="Extra system context (text or file); takes precedence over --system-prompt",
    )
    parser.add_argument("--session-id", default="", help="Session id to save under")
    parser.add_argument("--resume", metavar="SESSION_ID", help="Resume a previous session")
    parser.add_argument("--list-sessions", action="store_true", help="List saved sessions")
    parser.add_argument(
        "--timeout-ms",
        type=int,
        default=DEFAULT_TASK_TIMEOUT_MS,
        help=f"Task budget in milliseconds (default: {DEFAULT_TASK_TIMEOUT_MS})",
    )
    parser.add_argument("--json", action="store_true", help="Print results as JSON")
    parser.add_argument("--ubus", action="store_true", help="Answer pending bus messages once and exit")
    parser.add_argument("--subscriber", default="", help="Bus subscriber id (default: resolved via ufoo)")
    parser.add_argument("--tool", choices=SUPPORTED_TOOLS, help="Run one core tool and exit")
    parser.add_argument("--args-json", default="{}", help="JSON object of arguments for --tool")
    parser.add_argument("--show-config", action="store_true", help="Print the resolved provider settings")
    parser.add_argument("-q", "--quiet", action="store_true", help="Quiet mode (minimal output)")
    parser.add_argument(
        "--log-level",
        default=None,
        help="Logging level (default: $UCODE_LOG_LEVEL or WARNING)",
    )
    parser.add_argument("--version", action="version", version=f"ucode {__version__}")

    return parser.parse_args(argv)


def configure_logging(level: Optional[str] = None):
    name = str(level or os.environ.get("UCODE_LOG_LEVEL") or "WARNING").upper()
    logging.basicConfig(
        level=getattr(logging, name, logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


@contextmanager
def cancel_on_interrupt(event: threading.Event):
    """Ctrl+C sets `event` while a task runs instead of killing the process."""
    if threading.current_thread() is not threading.main_thread():
        yield event
        return

    original = signal.getsignal(signal.SIGINT)

    def handle(signum, frame):
        if event.is_set():
            # second Ctrl+C: give up waiting
            raise KeyboardInterrupt()
        logger.info("interrupt received, cancelling task")
        event.set()

    signal.signal(signal.SIGINT, handle)
    try:
        yield event
    finally:
        signal.signal(signal.SIGINT, original)


def parse_tool_args(text: str) -> dict:
    value = json.loads(text or "{}")
    if not isinstance(value, dict):
        raise ValueError("tool arguments must be a JSON object")
    return value


# =============================================================================
# Commands
# =============================================================================

def run_single_tool(name: str, args_json: str, workspace: str, display: Display) -> int:
    try:
        args = parse_tool_args(args_json)
    except ValueError as e:
        display.error(f"invalid --args-json: {e}")
        return 1
    result = run_tool_call(name, args, workspace)
    display.response(json.dumps(result.to_dict(), indent=2, ensure_ascii=False))
    return 0 if result.ok else 1


def run_one_task(session: AgentSession, task: str, display: Display, as_json: bool = False) -> int:
    cancel = threading.Event()
    with cancel_on_interrupt(cancel):
        result = session.run(
            task,
            on_delta=None if as_json else display.stream_delta,
            on_tool_log=None if as_json else display.tool_event,
            signal=cancel,
        )
    display.end_stream()

    if as_json:
        display.response(format_result(result, as_json=True))
    elif not result.ok and not result.cancelled:
        display.error(result.error or "task failed")
    elif result.cancelled or display.quiet or not result.streamed:
        # otherwise the streamed text is already on screen
        display.response(format_result(result))
    return 0 if result.ok else 1


def run_ubus(session: AgentSession, subscriber: str, display: Display, as_json: bool = False) -> int:
    outcome = run_bus_once(
        session,
        subscriber=subscriber,
        on_message=lambda task: display.status(f"ubus: task from {task.publisher}"),
    )
    if as_json:
        display.response(json.dumps(outcome, ensure_ascii=False))
    else:
        if outcome["summary"]:
            display.response(outcome["summary"])
        if outcome["error"]:
            display.error(outcome["error"])
    return 0 if outcome["ok"] else 1


def run_repl(session: AgentSession, subscriber: str, display: Display) -> int:
    """Interactive mode (REPL)."""
    display.status(f"ucode {__version__} in {session.workspace_root}. Type 'help' for commands.")

    while True:
        try:
            with patch_stdout():
                line = pt_prompt("\nucode> ").strip()
        except (EOFError, KeyboardInterrupt):
            display.response("\nGoodbye!")
            return 0

        if not line:
            continue

        command, _, rest = line.partition(" ")
        command = command.lower()
        rest = rest.strip()

        if command in ("exit", "quit"):
            return 0
        if command == "help":
            display.response(REPL_HELP)
            continue
        if command in ("ubus", "/ubus"):
            run_ubus(session, subscriber, display)
            continue
        if command == "resume":
            if not rest:
                display.error("usage: resume <session-id>")
                continue
            loaded = session.resume(rest)
            if loaded.ok:
                display.status(f"Resumed session: {session.session_id} ({len(session.messages)} messages)")
            else:
                display.error(loaded.error)
            continue
        if command in ("tool", "run"):
            name, _, args_json = rest.partition(" ")
            if not name:
                display.error("usage: tool <read|write|edit|bash> <args-json>")
                continue
            run_single_tool(name, args_json.strip() or "{}", session.workspace_root, display)
            continue

        run_one_task(session, line, display)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level)

    display = create_display(quiet=args.quiet)
    workspace = os.path.abspath(args.workspace or os.getcwd())

    if args.show_config:
        runtime = resolve_runtime_config(workspace, provider=args.provider, model=args.model)
        display.response(json.dumps(runtime.to_dict(redact=True), indent=2))
        return 0

    if args.tool:
        return run_single_tool(args.tool, args.args_json, workspace, display)

    session = AgentSession(
        workspace_root=workspace,
        provider=args.provider,
        model=args.model,
        context=build_system_context(args.append_system_prompt, args.system_prompt),
        session_id=args.session_id,
        timeout_ms=args.timeout_ms,
    )

    if args.list_sessions:
        display.session_list(session.store.list_sessions())
        return 0

    if args.resume:
        loaded = session.resume(args.resume)
        if not loaded.ok:
            display.error(loaded.error)
            return 1
        # explicit flags win over the resumed snapshot
        if args.provider:
            session.provider = normalize_provider(args.provider)
        if args.model:
            session.model = args.model
        display.status(f"Resumed session: {session.session_id}")

    if args.ubus:
        return run_ubus(session, args.subscriber, display, as_json=args.json)

    if args.interactive:
        return run_repl(session, args.subscriber, display)

    if not args.task:
        if args.resume:
            return 0
        display.error("Must provide a task, use --interactive, --ubus or --tool")
        return 1

    return run_one_task(session, args.task, display, as_json=args.json)


if __name__ == "__main__":
    sys.exit(main())
