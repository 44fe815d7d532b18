"""Thread-safe event collector for relay sessions."""

from __future__ import annotations

import statistics
import threading
import time
from collections import Counter
from datetime import datetime, timezone


class RelayMetrics:
    """Collects structured events from the relay sessions.

    Thread-safe: ``record()`` can be called from any session task or from
    the worker threads that run store writes.
    """

    MAX_EVENTS = 1000

    def __init__(self) -> None:
        self.start_time: float = time.time()
        self._events: list[dict] = []
        self._lock = threading.Lock()
        self._seq = 0

    def record(self, event: dict) -> None:
        """Append an event (thread-safe). Adds ``_seq`` and ``ts``."""
        with self._lock:
            event = dict(event)  # shallow copy to avoid caller mutation
            event["_seq"] = self._seq
            if "ts" not in event:
                event["ts"] = datetime.now(timezone.utc).isoformat()
            self._seq += 1
            self._events.append(event)
            if len(self._events) > self.MAX_EVENTS:
                del self._events[: len(self._events) - self.MAX_EVENTS]

    def snapshot(self) -> dict:
        """Aggregate stats over the retained events."""
        with self._lock:
            sessions = [e for e in self._events if e.get("type") == "session"]
            outcomes = Counter(e.get("outcome", "unknown") for e in sessions)
            finish_reasons = Counter(
                e["finish_reason"] for e in sessions if e.get("finish_reason")
            )
            upstream_values = [e["upstream_ms"] for e in sessions if "upstream_ms" in e]
            answer_chars = [e["answer_chars"] for e in sessions if "answer_chars" in e]
            store_failures = sum(
                1 for e in self._events if e.get("type") == "store_failure"
            )

            return {
                "type": "snapshot",
                "uptime_s": round(time.time() - self.start_time, 1),
                "total_sessions": len(sessions),
                "outcomes": dict(outcomes),
                "finish_reasons": dict(finish_reasons),
                "store_failures": store_failures,
                "avg_upstream_ms": round(statistics.mean(upstream_values), 1) if upstream_values else 0,
                "avg_answer_chars": round(statistics.mean(answer_chars), 1) if answer_chars else 0,
                "recent_sessions": list(sessions[-50:]),
            }
