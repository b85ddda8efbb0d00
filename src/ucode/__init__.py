"""
ucode - a workspace coding agent with a crash-safe bus queue consumer

Quick Start:
    from ucode import AgentSession, format_result

    session = AgentSession(workspace_root=".", model="gpt-4.1-mini")
    print(format_result(session.run("Summarize README.md")))

    # One tool, no model
    from ucode import run_tool_call
    result = run_tool_call("read", {"path": "README.md"}, ".")
"""

__version__ = "0.3.0"

from .errors import (
    UcodeError,
    ConfigurationError,
    ProviderError,
    StreamError,
    TaskTimeout,
    TaskCancelled,
)
from .config import RuntimeConfig, load_config, resolve_runtime_config, resolve_transport
from .tools import ToolName, ToolRegistry, ToolResult, create_core_registry, run_tool_call
from .llm import (
    OpenAIChatTransport,
    AnthropicMessagesTransport,
    create_transport,
    resolve_completion_url,
    resolve_anthropic_messages_url,
)
from .agent import AgentLoop, TaskResult, ToolEvent, run_task
from .state import SessionSnapshot, SessionStore, save_session, load_session
from .queue import QueueConsumer, pending_count, drain_jsonl_file, recover_stale_processing_files
from .bus import BusClient, run_shell_capture
from .session import AgentSession, SessionResult, format_result, run_bus_once

__all__ = [
    "__version__",
    # Errors
    "UcodeError",
    "ConfigurationError",
    "ProviderError",
    "StreamError",
    "TaskTimeout",
    "TaskCancelled",
    # Config
    "RuntimeConfig",
    "load_config",
    "resolve_runtime_config",
    "resolve_transport",
    # Tools
    "ToolName",
    "ToolRegistry",
    "ToolResult",
    "create_core_registry",
    "run_tool_call",
    # Transports
    "OpenAIChatTransport",
    "AnthropicMessagesTransport",
    "create_transport",
    "resolve_completion_url",
    "resolve_anthropic_messages_url",
    # Agent
    "AgentLoop",
    "TaskResult",
    "ToolEvent",
    "run_task",
    # Sessions
    "SessionSnapshot",
    "SessionStore",
    "save_session",
    "load_session",
    "AgentSession",
    "SessionResult",
    "format_result",
    # Bus queue
    "QueueConsumer",
    "pending_count",
    "drain_jsonl_file",
    "recover_stale_processing_files",
    "BusClient",
    "run_shell_capture",
    "run_bus_once",
]
