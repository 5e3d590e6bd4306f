"""Thread-safe event collector for the relay status endpoint."""

from __future__ import annotations

import statistics
import threading
import time
from collections import Counter, deque
from datetime import datetime, timezone


class RelayMetrics:
    """Collects structured events from the session pipeline.

    Thread-safe: ``record()`` may be called from any worker. Only the most
    recent ``max_events`` events are kept.
    """

    def __init__(self, max_events: int = 1000) -> None:
        self.start_time: float = time.time()
        self._events: deque[dict] = deque(maxlen=max_events)
        self._lock = threading.Lock()
        self._seq = 0
        self._outcomes: Counter[str] = Counter()

    def record(self, event: dict) -> None:
        """Append an event (thread-safe). Adds ``_seq`` and ``ts``."""
        with self._lock:
            event = dict(event)  # shallow copy to avoid caller mutation
            event["_seq"] = self._seq
            if "ts" not in event:
                event["ts"] = datetime.now(timezone.utc).isoformat()
            self._seq += 1
            self._events.append(event)
            if event.get("type") == "message" and event.get("outcome"):
                self._outcomes[event["outcome"]] += 1

    def events_since(self, seq: int) -> list[dict]:
        """Return retained events with ``_seq`` > *seq*."""
        with self._lock:
            return [e for e in self._events if e["_seq"] > seq]

    def snapshot(self) -> dict:
        """Aggregate stats for the status endpoint."""
        with self._lock:
            messages = [e for e in self._events if e.get("type") == "message"]
            latencies = [e["completion_ms"] for e in messages if "completion_ms" in e]
            prompt_tokens = sum(e.get("prompt_tokens", 0) for e in messages)
            completion_tokens = sum(e.get("completion_tokens", 0) for e in messages)
            return {
                "type": "snapshot",
                "uptime_s": round(time.time() - self.start_time, 1),
                "total_messages": sum(self._outcomes.values()),
                "outcomes": dict(self._outcomes),
                "prompt_tokens": prompt_tokens,
                "completion_tokens": completion_tokens,
                "avg_completion_ms": round(statistics.mean(latencies), 1) if latencies else 0,
                "recent_messages": list(messages[-50:]),
            }
