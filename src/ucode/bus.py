"""
Event bus collaborators - the `ufoo bus` CLI seen from the runtime.

The bus itself lives in another process; this module only shells out to
it (whoami/join/send) and knows where its per-subscriber queue files are.
"""
import os
import re
import shlex
import logging
import subprocess
from dataclasses import dataclass
from typing import Optional, Callable, Mapping, List

from .defaults import UFOO_DIR, QUEUES_SUBDIR, PENDING_FILE

logger = logging.getLogger(__name__)

_ANSI_CSI = re.compile(r"\x1b\[[0-9;?]*[ -/]*[@-~]")
_ANSI_OSC = re.compile(r"\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)")


@dataclass
class ShellResult:
    ok: bool
    output: str = ""
    error: str = ""


Shell = Callable[[str], ShellResult]


def strip_ansi(text: str) -> str:
    return _ANSI_OSC.sub("", _ANSI_CSI.sub("", str(text or "")))


def run_shell_capture(command: str, cwd: Optional[str] = None) -> ShellResult:
    """Run `command` through the shell; non-zero exit becomes ok=False."""
    try:
        result = subprocess.run(
            str(command or ""),
            shell=True,
            capture_output=True,
            text=True,
            cwd=cwd,
        )
    except OSError as e:
        return ShellResult(ok=False, error=str(e) or "shell command failed")

    if result.returncode == 0:
        return ShellResult(ok=True, output=result.stdout or "")
    detail = "\n".join(part for part in (result.stdout, result.stderr) if part).strip()
    return ShellResult(
        ok=False,
        output=detail,
        error=detail or f"shell command failed with exit code {result.returncode}",
    )


def safe_subscriber_name(subscriber_id: str) -> str:
    return str(subscriber_id or "").replace(":", "_")


def resolve_pending_queue_file(workspace_root: str, subscriber_id: str) -> str:
    sub = str(subscriber_id or "").strip()
    if not sub:
        return ""
    root = str(workspace_root or "").strip() or os.getcwd()
    return os.path.join(root, UFOO_DIR, *QUEUES_SUBDIR, safe_subscriber_name(sub), PENDING_FILE)


def resolve_project_root(preferred: str = "", env: Optional[Mapping[str, str]] = None) -> str:
    """First candidate that has a bus directory, else the first candidate."""
    env = os.environ if env is None else env
    candidates: List[str] = [
        c for c in (
            str(preferred or "").strip(),
            str(env.get("UFOO_UCODE_PROJECT_ROOT") or "").strip(),
            str(env.get("UFOO_PROJECT_ROOT") or "").strip(),
            os.getcwd(),
        )
        if c
    ]
    for root in candidates:
        if os.path.isdir(os.path.join(root, UFOO_DIR, "bus")):
            return root
    return candidates[0]


class BusClient:
    """Thin wrapper over the `ufoo bus` commands used by the consumer."""

    def __init__(self, workspace_root: str = ".", shell: Optional[Shell] = None, env: Optional[Mapping[str, str]] = None):
        self.workspace_root = workspace_root
        self.env = os.environ if env is None else env
        self.shell = shell or (lambda command: run_shell_capture(command, cwd=workspace_root))

    def resolve_subscriber_id(self, explicit: str = "") -> str:
        """explicit -> UFOO_SUBSCRIBER_ID -> `ufoo bus whoami` -> `ufoo bus join`."""
        subscriber = str(explicit or "").strip() or str(self.env.get("UFOO_SUBSCRIBER_ID") or "").strip()
        if subscriber:
            return subscriber

        whoami = self.shell("ufoo bus whoami 2>/dev/null || true")
        subscriber = strip_ansi(whoami.output if whoami else "").strip()
        if subscriber:
            return subscriber

        joined = self.shell("ufoo bus join | tail -1")
        return strip_ansi(joined.output if joined else "").strip()

    def pending_file(self, subscriber_id: str) -> str:
        return resolve_pending_queue_file(self.workspace_root, subscriber_id)

    def send_reply(self, agent_id: str, text: str) -> ShellResult:
        command = f"ufoo bus send {shlex.quote(str(agent_id))} {shlex.quote(str(text))}"
        result = self.shell(command)
        if not result.ok:
            logger.warning("reply to %s failed: %s", agent_id, result.error)
        return result
