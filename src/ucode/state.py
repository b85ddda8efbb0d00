"""
State Management - session snapshots persisted per workspace

A session snapshot records the provider, model, extra system context and
the full message history of one conversation so it can be resumed later.
Snapshots live under <root>/.ufoo/agent/ucode-core/sessions/<id>.json and
are written atomically.
"""
import os
import re
import json
import uuid
import time
import logging
import tempfile
from datetime import datetime, timezone
from typing import List, Dict, Any, Optional
from dataclasses import dataclass, field
from pathlib import Path

from .defaults import UFOO_DIR, SESSIONS_SUBDIR, SESSION_VERSION

logger = logging.getLogger(__name__)

SESSION_ID_PATTERN = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9._:-]{2,127}$")


def _base36(value: int) -> str:
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    if value <= 0:
        return "0"
    out = ""
    while value:
        value, rem = divmod(value, 36)
        out = digits[rem] + out
    return out


def normalize_session_id(value: Any) -> str:
    """The trimmed id if it is valid, else ""."""
    raw = str(value or "").strip()
    if not raw or not SESSION_ID_PATTERN.match(raw):
        return ""
    return raw


def create_session_id(prefix: str = "ucode") -> str:
    safe_prefix = re.sub(r"[^a-zA-Z0-9_-]+", "", str(prefix or "")) or "ucode"
    return f"{safe_prefix}-{_base36(int(time.time() * 1000))}-{uuid.uuid4().hex[:8]}"


def resolve_session_id(value: Any = "") -> str:
    return normalize_session_id(value) or create_session_id("ucode")


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def clone_messages(value: Any) -> List[Dict[str, Any]]:
    if not isinstance(value, list):
        return []
    try:
        copied = json.loads(json.dumps(value))
    except (TypeError, ValueError):
        return []
    return [m for m in copied if isinstance(m, dict)]


@dataclass
class SessionSnapshot:
    """
    Persisted state of one conversation

    `messages` are kept in the provider's own wire shape.
    """
    session_id: str
    workspace_root: str = ""
    provider: str = ""
    model: str = ""
    context: str = ""
    messages: List[Dict[str, Any]] = field(default_factory=list)
    created_at: str = ""
    updated_at: str = ""
    version: int = SESSION_VERSION

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "sessionId": self.session_id,
            "workspaceRoot": self.workspace_root,
            "provider": self.provider,
            "model": self.model,
            "context": self.context,
            "nlMessages": clone_messages(self.messages),
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionSnapshot":
        return cls(
            session_id=str(data.get("sessionId") or ""),
            workspace_root=str(data.get("workspaceRoot") or ""),
            provider=str(data.get("provider") or "").strip(),
            model=str(data.get("model") or "").strip(),
            context=str(data.get("context") or ""),
            messages=clone_messages(data.get("nlMessages")),
            created_at=str(data.get("createdAt") or "").strip(),
            updated_at=str(data.get("updatedAt") or "").strip(),
            version=SESSION_VERSION,
        )


@dataclass
class SaveResult:
    ok: bool
    session_id: str = ""
    error: str = ""
    file_path: str = ""
    snapshot: Optional[SessionSnapshot] = None


@dataclass
class LoadResult:
    ok: bool
    session_id: str = ""
    error: str = ""
    file_path: str = ""
    snapshot: Optional[SessionSnapshot] = None


def _fsync_dir(dir_path: Path) -> None:
    """Best-effort directory fsync so the rename itself is durable."""
    try:
        flags = os.O_RDONLY
        if hasattr(os, "O_DIRECTORY"):
            flags |= os.O_DIRECTORY
        fd = os.open(str(dir_path), flags)
        try:
            os.fsync(fd)
        finally:
            os.close(fd)
    except OSError:
        # Not every platform/filesystem supports directory fsync.
        pass


def atomic_write_text(path: Path, content: str, encoding: str = "utf-8") -> None:
    """Write to a temp file in the same directory, then rename over `path`."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding=encoding) as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
        _fsync_dir(path.parent)
    finally:
        if tmp_path.exists():
            tmp_path.unlink()


class SessionStore:
    """
    Manages session persistence and retrieval for one workspace

    Supports:
    - atomic snapshot writes
    - load by id
    - listing and explicit deletion (nothing is deleted implicitly)
    """

    def __init__(self, workspace_root: str = "."):
        self.workspace_root = os.path.abspath(str(workspace_root or "").strip() or os.getcwd())
        self.sessions_dir = Path(self.workspace_root, UFOO_DIR, *SESSIONS_SUBDIR)

    def session_path(self, session_id: str) -> Optional[Path]:
        normalized = normalize_session_id(session_id)
        if not normalized:
            return None
        return self.sessions_dir / f"{normalized}.json"

    def save(self, snapshot: SessionSnapshot) -> SaveResult:
        """Write `snapshot`; refreshes updatedAt and keeps an existing createdAt."""
        session_id = normalize_session_id(snapshot.session_id)
        if not session_id:
            return SaveResult(ok=False, error="invalid session id")

        now = now_iso()
        payload = SessionSnapshot(
            session_id=session_id,
            workspace_root=self.workspace_root,
            provider=str(snapshot.provider or "").strip(),
            model=str(snapshot.model or "").strip(),
            context=str(snapshot.context or ""),
            messages=clone_messages(snapshot.messages),
            created_at=str(snapshot.created_at or "").strip() or now,
            updated_at=now,
        )
        path = self.session_path(session_id)
        try:
            atomic_write_text(path, json.dumps(payload.to_dict(), indent=2, ensure_ascii=False) + "\n")
        except OSError as e:
            logger.warning("failed to save session %s: %s", session_id, e)
            return SaveResult(ok=False, session_id=session_id, error=str(e) or "failed to save session", file_path=str(path))

        logger.debug("saved session %s (%d messages)", session_id, len(payload.messages))
        return SaveResult(ok=True, session_id=session_id, file_path=str(path), snapshot=payload)

    def load(self, session_id: str) -> LoadResult:
        normalized = normalize_session_id(session_id)
        if not normalized:
            return LoadResult(ok=False, error="invalid session id")

        path = self.session_path(normalized)
        if not path.exists():
            return LoadResult(
                ok=False,
                session_id=normalized,
                error=f"session not found: {normalized}",
                file_path=str(path),
            )

        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            return LoadResult(ok=False, session_id=normalized, error=str(e) or "failed to load session", file_path=str(path))
        if not isinstance(data, dict):
            return LoadResult(ok=False, session_id=normalized, error="failed to load session", file_path=str(path))

        snapshot = SessionSnapshot.from_dict(data)
        snapshot.session_id = normalized
        snapshot.workspace_root = self.workspace_root
        return LoadResult(ok=True, session_id=normalized, file_path=str(path), snapshot=snapshot)

    def list_sessions(self) -> List[Dict[str, Any]]:
        """All readable snapshots, most recently updated first."""
        sessions = []
        if not self.sessions_dir.is_dir():
            return sessions
        for path in self.sessions_dir.glob("*.json"):
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
            except (OSError, ValueError):
                logger.debug("skipping unreadable session file %s", path)
                continue
            if not isinstance(data, dict):
                continue
            sessions.append({
                "session_id": str(data.get("sessionId") or path.stem),
                "provider": data.get("provider", ""),
                "model": data.get("model", ""),
                "created_at": data.get("createdAt", ""),
                "updated_at": data.get("updatedAt", ""),
                "message_count": len(data.get("nlMessages") or []),
            })
        return sorted(sessions, key=lambda s: s.get("updated_at") or "", reverse=True)

    def delete(self, session_id: str) -> bool:
        path = self.session_path(session_id)
        if path is None or not path.exists():
            return False
        path.unlink()
        return True


def save_session(workspace_root: str, snapshot: SessionSnapshot) -> SaveResult:
    return SessionStore(workspace_root).save(snapshot)


def load_session(workspace_root: str, session_id: str) -> LoadResult:
    return SessionStore(workspace_root).load(session_id)
