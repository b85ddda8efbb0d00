"""
Crash-safe bus queue consumer.

Producers append JSON lines to a per-subscriber `pending.jsonl`. The
consumer claims the whole file with one atomic rename to a processing
marker named

    <pending>.processing.<pid>.<epochMs>

processes each task serially, appends only the failed lines back to the
pending file and finally deletes the marker. A marker whose PID is dead,
or which has not been touched for longer than the recovery threshold, was
abandoned by a crashed consumer: its lines are appended back to the
pending file before the next drain. Delivery is at-least-once.
"""
import os
import re
import json
import time
import logging
from dataclasses import dataclass, field
from typing import List, Dict, Any, Optional, Callable

import psutil

from .bus import ShellResult
from .defaults import (
    BUS_REPLY_MAX_CHARS,
    STALE_PROCESSING_MAX_AGE_MS,
    RECOVERABLE_PROCESSING_MAX_AGE_MS,
)

logger = logging.getLogger(__name__)

MARKER_PID_PATTERN = re.compile(r"\.processing\.(\d+)\.")
_LINE_SEPARATOR = re.compile(r"\r?\n")
_WHITESPACE = re.compile(r"\s+")


@dataclass
class QueueTask:
    publisher: str
    task: str
    raw_line: str = ""


@dataclass
class DrainedBatch:
    raw_lines: List[str] = field(default_factory=list)
    processing_file: str = ""
    error: str = ""


@dataclass
class DrainReport:
    handled: int = 0
    errors: List[str] = field(default_factory=list)
    recovered: int = 0
    requeued: int = 0

    @property
    def ok(self) -> bool:
        return not self.errors


# =============================================================================
# Markers
# =============================================================================

def marker_prefix(pending_file: str) -> str:
    return f"{os.path.basename(pending_file)}.processing."


def list_processing_files(pending_file: str) -> List[str]:
    pending_file = str(pending_file or "").strip()
    if not pending_file:
        return []
    directory = os.path.dirname(pending_file) or "."
    if not os.path.isdir(directory):
        return []
    prefix = marker_prefix(pending_file)
    return sorted(
        os.path.join(directory, name)
        for name in os.listdir(directory)
        if name.startswith(prefix)
    )


def marker_pid(path: str) -> Optional[int]:
    match = MARKER_PID_PATTERN.search(os.path.basename(path))
    if not match:
        return None
    pid = int(match.group(1))
    return pid if pid > 0 else None


def is_pid_alive(pid: Optional[int]) -> bool:
    if not pid or pid <= 0:
        return False
    return psutil.pid_exists(pid)


def _age_ms(path: str, now_ms: float) -> Optional[float]:
    try:
        return now_ms - os.stat(path).st_mtime * 1000.0
    except OSError:
        return None


def is_stale_marker(path: str, max_age_ms: int, now_ms: Optional[float] = None) -> bool:
    """Dead owner PID, or not touched for `max_age_ms` (0 disables the age check)."""
    pid = marker_pid(path)
    if pid is not None and not is_pid_alive(pid):
        return True
    if max_age_ms <= 0:
        return False
    now_ms = time.time() * 1000.0 if now_ms is None else now_ms
    age = _age_ms(path, now_ms)
    return age is not None and age >= max_age_ms


def touch_marker(path: str) -> None:
    try:
        os.utime(path, None)
    except OSError as e:
        logger.debug("could not touch %s: %s", path, e)


# =============================================================================
# File helpers
# =============================================================================

def _non_blank_lines(content: str) -> List[str]:
    return [line for line in _LINE_SEPARATOR.split(content) if line.strip()]


def count_pending_lines(pending_file: str) -> int:
    try:
        with open(pending_file, "r", encoding="utf-8") as f:
            return len(_non_blank_lines(f.read()))
    except (OSError, TypeError, ValueError):
        return 0


def count_recoverable_processing_files(pending_file: str, max_age_ms: int = RECOVERABLE_PROCESSING_MAX_AGE_MS) -> int:
    now_ms = time.time() * 1000.0
    return sum(1 for path in list_processing_files(pending_file) if is_stale_marker(path, max_age_ms, now_ms))


def pending_count(pending_file: str) -> int:
    """Pending lines plus abandoned markers, so a crashed drain still shows as work."""
    if not pending_file:
        return 0
    return count_pending_lines(pending_file) + count_recoverable_processing_files(pending_file)


def requeue_lines(pending_file: str, lines: List[str]) -> int:
    """Append `lines` to the pending file; returns how many were written."""
    lines = [line for line in lines if str(line or "").strip()]
    if not pending_file or not lines:
        return 0
    directory = os.path.dirname(pending_file)
    if directory:
        os.makedirs(directory, exist_ok=True)
    with open(pending_file, "a", encoding="utf-8") as f:
        f.write("\n".join(lines) + "\n")
    return len(lines)


def remove_marker(path: str) -> None:
    if not path:
        return
    try:
        os.remove(path)
    except FileNotFoundError:
        pass


def recover_stale_processing_files(pending_file: str, max_age_ms: int = STALE_PROCESSING_MAX_AGE_MS) -> int:
    """Put the lines of abandoned markers back into the pending file."""
    recovered = 0
    now_ms = time.time() * 1000.0
    for path in list_processing_files(pending_file):
        if not os.path.isfile(path) or not is_stale_marker(path, max_age_ms, now_ms):
            continue
        try:
            with open(path, "r", encoding="utf-8") as f:
                lines = _non_blank_lines(f.read())
        except OSError as e:
            logger.warning("cannot read stale marker %s: %s", path, e)
            continue
        try:
            requeue_lines(pending_file, lines)
            remove_marker(path)
        except OSError as e:
            logger.error("failed to recover %s: %s", path, e)
            continue
        logger.info("recovered %d line(s) from %s", len(lines), os.path.basename(path))
        recovered += 1
    return recovered


def drain_jsonl_file(pending_file: str) -> DrainedBatch:
    """Claim the pending file by renaming it to a processing marker."""
    if not pending_file or not os.path.exists(pending_file):
        return DrainedBatch()

    marker = f"{pending_file}.processing.{os.getpid()}.{int(time.time() * 1000)}"
    try:
        os.rename(pending_file, marker)
    except FileNotFoundError:
        # another consumer won the race
        return DrainedBatch()
    except OSError as e:
        return DrainedBatch(error=str(e) or "drain failed")

    touch_marker(marker)
    try:
        with open(marker, "r", encoding="utf-8") as f:
            content = f.read()
    except (OSError, ValueError) as e:
        try:
            os.rename(marker, pending_file)
        except OSError:
            logger.error("could not restore %s after failed read", marker)
        return DrainedBatch(error=str(e) or "drain failed")

    return DrainedBatch(raw_lines=_non_blank_lines(content), processing_file=marker)


# =============================================================================
# Entries
# =============================================================================

def extract_task_from_event(event: Any) -> Optional[QueueTask]:
    """A QueueTask for a well-formed message event, else None."""
    if not isinstance(event, dict):
        return None
    if str(event.get("event") or "").strip().lower() != "message":
        return None

    publisher = event.get("publisher")
    if isinstance(publisher, dict):
        publisher = publisher.get("subscriber") or publisher.get("nickname") or ""
    publisher = publisher.strip() if isinstance(publisher, str) else ""
    if not publisher:
        return None

    data = event.get("data") if isinstance(event.get("data"), dict) else {}
    message = data.get("message")
    if not isinstance(message, str):
        message = data.get("text") if isinstance(data.get("text"), str) else ""
    task = message.strip()
    if not task:
        return None
    return QueueTask(publisher=publisher, task=task)


def parse_queue_line(line: str) -> Optional[QueueTask]:
    try:
        event = json.loads(line)
    except ValueError:
        return None
    task = extract_task_from_event(event)
    if task is not None:
        task.raw_line = line
    return task


def format_task_reply(result: Any) -> str:
    """Reply text for a task outcome (TaskResult-like object, dict or string)."""
    if isinstance(result, str):
        return result
    get = result.get if isinstance(result, dict) else (lambda k, d=None: getattr(result, k, d))
    if get("cancelled", False):
        return "Cancelled."
    if not get("ok", True):
        return f"Error: {get('error', '') or 'task failed'}"
    return str(get("summary", "") or get("output", "") or "")


def collapse_reply(text: str, max_chars: int = BUS_REPLY_MAX_CHARS) -> str:
    reply = _WHITESPACE.sub(" ", str(text or "")).strip() or "Done."
    return reply[:max_chars]


class QueueConsumer:
    """
    Drains one pending file and answers each task over the bus.

    Args:
        run_task: called with the task text; its return value is formatted
            into the reply. An exception requeues the entry.
        send_reply: (publisher, text) -> ShellResult. A failed send requeues
            the entry.
        format_reply: turns the run_task result into reply text.
        on_message: optional observer called with each QueueTask before it runs.
    """

    def __init__(
        self,
        run_task: Callable[[str], Any],
        send_reply: Callable[[str, str], ShellResult],
        format_reply: Optional[Callable[[Any], str]] = None,
        on_message: Optional[Callable[[QueueTask], None]] = None,
        stale_max_age_ms: int = STALE_PROCESSING_MAX_AGE_MS,
    ):
        self.run_task = run_task
        self.send_reply = send_reply
        self.format_reply = format_reply or format_task_reply
        self.on_message = on_message
        self.stale_max_age_ms = stale_max_age_ms

    def drain_and_process(self, pending_file: str) -> DrainReport:
        report = DrainReport()
        if not pending_file:
            return report

        report.recovered = recover_stale_processing_files(pending_file, self.stale_max_age_ms)

        batch = drain_jsonl_file(pending_file)
        if batch.error:
            report.errors.append(batch.error)
            return report
        if not batch.processing_file:
            return report

        tasks = [t for t in (parse_queue_line(line) for line in batch.raw_lines) if t is not None]
        dropped = len(batch.raw_lines) - len(tasks)
        if dropped:
            logger.info("dropped %d malformed or non-message line(s)", dropped)

        failed: List[str] = []
        done = 0
        try:
            for task in tasks:
                touch_marker(batch.processing_file)
                if self.on_message is not None:
                    self.on_message(task)

                try:
                    result = self.run_task(task.task)
                except Exception as e:
                    logger.warning("task from %s failed: %s", task.publisher, e)
                    report.errors.append(f"task from {task.publisher} failed: {e or 'task failed'}")
                    failed.append(task.raw_line)
                    done += 1
                    continue

                reply = collapse_reply(self.format_reply(result))
                sent = self.send_reply(task.publisher, reply)
                done += 1
                if not sent.ok:
                    report.errors.append(f"reply to {task.publisher} failed: {sent.error or 'send failed'}")
                    failed.append(task.raw_line)
                    continue
                report.handled += 1
        finally:
            # entries not answered when an unexpected error escaped go back too
            failed.extend(t.raw_line for t in tasks[done:])
            keep_marker = False
            if failed:
                try:
                    report.requeued = requeue_lines(pending_file, failed)
                    logger.info("requeued %d line(s) to %s", report.requeued, pending_file)
                except OSError as e:
                    # the marker stays so recovery picks the batch up again
                    logger.error("requeue to %s failed: %s", pending_file, e)
                    report.errors.append(f"requeue failed: {e}")
                    keep_marker = True
            if not keep_marker:
                remove_marker(batch.processing_file)

        return report
