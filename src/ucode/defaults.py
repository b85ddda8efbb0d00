"""
Default configuration values for the ucode runtime.

Single source of truth for all default settings.

=============================================================================
PROVIDERS
=============================================================================

Two wire protocols are spoken directly over HTTP (no SDK in between):

openai-chat          POST <base>/chat/completions   (OpenAI and compatible
                                                     gateways, codex aliases)
anthropic-messages   POST <base>/messages           (Anthropic, claude aliases)

The transport is derived from the provider name and the shape of the base URL,
so a gateway that exposes `/v1/messages` is spoken to in the messages dialect
even when the provider is left blank.

=============================================================================
"""

# =============================================================================
# PROVIDER ENDPOINTS
# =============================================================================

DEFAULT_PROVIDER = "openai"

DEFAULT_OPENAI_BASE_URL = "https://api.openai.com/v1"
DEFAULT_ANTHROPIC_BASE_URL = "https://api.anthropic.com/v1"

ANTHROPIC_VERSION = "2023-06-01"
ANTHROPIC_MAX_TOKENS = 4096

TRANSPORT_OPENAI_CHAT = "openai-chat"
TRANSPORT_ANTHROPIC_MESSAGES = "anthropic-messages"

# =============================================================================
# TIMEOUTS
# =============================================================================

# Wall-clock budget for one task (all turns together)
DEFAULT_TASK_TIMEOUT_MS = 300000
MIN_TASK_TIMEOUT_MS = 1000

# Retry budget after a timeout: max(2x, +120s), capped at 30 minutes
TIMEOUT_RETRY_EXTRA_MS = 120000
MAX_TASK_TIMEOUT_MS = 1800000

# bash tool
DEFAULT_BASH_TIMEOUT_MS = 60000
MIN_BASH_TIMEOUT_MS = 100

# =============================================================================
# CONTENT LIMITS
# =============================================================================

DEFAULT_READ_MAX_BYTES = 200000
MIN_READ_MAX_BYTES = 256

# Serialized tool results fed back to the model
TOOL_RESULT_CLIP_CHARS = 12000

# Provider error bodies quoted in error messages
ERROR_BODY_CLIP_CHARS = 500

# Replies sent back over the bus
BUS_REPLY_MAX_CHARS = 2000

# Extra system context (prompt files, --append-system-prompt)
SYSTEM_CONTEXT_MAX_CHARS = 32000

# Project files pulled into the analysis preflight
PREFLIGHT_FILE_MAX_BYTES = 12000

# =============================================================================
# QUEUE
# =============================================================================

# A processing marker older than this is recovered before draining
STALE_PROCESSING_MAX_AGE_MS = 30000
# ...and counted as pending work by pending_count()
RECOVERABLE_PROCESSING_MAX_AGE_MS = 60000

# =============================================================================
# WORKSPACE LAYOUT
# =============================================================================

UFOO_DIR = ".ufoo"
CONFIG_FILE = "config.json"
SESSIONS_SUBDIR = ("agent", "ucode-core", "sessions")
QUEUES_SUBDIR = ("bus", "queues")
PENDING_FILE = "pending.jsonl"

SESSION_VERSION = 1
