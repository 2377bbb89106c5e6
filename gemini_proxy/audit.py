from __future__ import annotations

import json
import time
from pathlib import Path
from queue import Full, Queue
from threading import Lock, Thread
from typing import Any

# Chat text can carry patient details; these keys never reach the log file.
REDACTED_KEYS = frozenset({"messages", "content", "contents", "prompt", "text", "body", "raw_text"})
REDACTED_VALUE = "[redacted]"


def scrub_event(event: dict[str, Any]) -> dict[str, Any]:
    def _scrub(value: Any) -> Any:
        if isinstance(value, dict):
            return {
                key: REDACTED_VALUE if key in REDACTED_KEYS else _scrub(item)
                for key, item in value.items()
            }
        if isinstance(value, list):
            return [_scrub(item) for item in value]
        return value

    return _scrub(event)


class AttemptAuditLog:
    """Appends one JSON line per proxy event from a background writer thread."""

    def __init__(
        self,
        path: str,
        enabled: bool = True,
        max_queue_size: int = 4096,
    ) -> None:
        self.enabled = enabled
        self.path = Path(path)
        self._dropped = 0
        self._dropped_lock = Lock()
        self._queue: Queue[str | None] = Queue(maxsize=max_queue_size)
        self._writer: Thread | None = None
        if self.enabled:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._writer = Thread(
                target=self._write_loop, name="proxy-audit-writer", daemon=True
            )
            self._writer.start()

    @property
    def dropped_records(self) -> int:
        with self._dropped_lock:
            return self._dropped

    def record(self, event: dict[str, Any]) -> None:
        if not self.enabled:
            return
        line = json.dumps(
            {"ts": int(time.time()), **scrub_event(event)},
            ensure_ascii=True,
            separators=(",", ":"),
            default=str,
        )
        try:
            self._queue.put_nowait(line)
        except Full:
            with self._dropped_lock:
                self._dropped += 1

    def close(self) -> None:
        if self._writer is None:
            return
        self._queue.put(None)
        self._writer.join(timeout=2.0)
        self._writer = None

    def _write_loop(self) -> None:
        with self.path.open("a", encoding="utf-8") as handle:
            while True:
                line = self._queue.get()
                if line is None:
                    break
                handle.write(line + "\n")
                handle.flush()
            with self._dropped_lock:
                dropped, self._dropped = self._dropped, 0
            if dropped:
                summary = {
                    "ts": int(time.time()),
                    "event": "audit_dropped_records",
                    "dropped_count": dropped,
                }
                handle.write(json.dumps(summary, separators=(",", ":")) + "\n")
