"""
Append-only JSONL record of every event a session emits.
"""

from __future__ import annotations

import threading
from pathlib import Path

from sloppy.event_bus import EventBus, SloppyEvent


class AuditLogger:
    def __init__(self, log_file: Path, batch_size: int = 10, session_id: str | None = None):
        self.log_file = Path(log_file)
        self.batch_size = batch_size
        self.session_id = session_id
        self._buffer: list[str] = []
        self._lock = threading.Lock()

    def attach(self, event_bus: EventBus) -> "AuditLogger":
        event_bus.subscribe(self.record)
        return self

    def detach(self, event_bus: EventBus) -> None:
        event_bus.unsubscribe(self.record)
        self.flush()

    def record(self, event: SloppyEvent) -> None:
        if self.session_id is not None and event.session_id != self.session_id:
            return
        with self._lock:
            self._buffer.append(event.model_dump_json() + "\n")
            full = len(self._buffer) >= self.batch_size
        if full:
            self.flush()

    def flush(self) -> None:
        with self._lock:
            if not self._buffer:
                return
            lines, self._buffer = self._buffer, []
        self.log_file.parent.mkdir(parents=True, exist_ok=True)
        with open(self.log_file, "a", encoding="utf-8") as f:
            f.writelines(lines)
