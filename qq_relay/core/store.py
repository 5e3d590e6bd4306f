"""ConversationStore: bounded per-user chat history held in memory."""

from __future__ import annotations

import logging
import threading

from ..types import HistoryConfig, HistoryEntry, UserID

logger = logging.getLogger(__name__)


class ConversationStore:
    """Maps a user id to its ordered exchange history.

    Process-local and volatile: created lazily per user, lost on restart.
    One lock guards every user's history; it is held only for the
    append + evict critical section and for snapshot copies.
    """

    def __init__(self, config: HistoryConfig | None = None) -> None:
        self.config = config or HistoryConfig()
        self._histories: dict[UserID, list[HistoryEntry]] = {}
        self._lock = threading.Lock()

    def append_exchange(
        self,
        user_id: UserID,
        user_entry: HistoryEntry,
        assistant_entry: HistoryEntry,
    ) -> None:
        """Record one user/assistant exchange, evicting oldest entries first.

        Eviction is checked against the history *before* the new pair is
        appended: if it holds more than ``soft_token_limit`` or at least
        ``max_entries`` entries, the front is trimmed until the total is
        within ``hard_token_limit`` and there is room for the new pair.
        """
        cfg = self.config
        with self._lock:
            messages = self._histories.get(user_id, [])
            total = sum(m.token_cost for m in messages)
            room = max(cfg.max_entries - 2, 0)

            if total > cfg.soft_token_limit or len(messages) >= cfg.max_entries:
                before = len(messages)
                drop = 0
                while drop < len(messages) and (
                    total > cfg.hard_token_limit or len(messages) - drop > room
                ):
                    total -= messages[drop].token_cost
                    drop += 1
                messages = messages[drop:]
                logger.info(
                    "History limit reached for user %s: evicted %d of %d entries (%d tokens kept)",
                    user_id, drop, before, total,
                )

            self._histories[user_id] = messages + [user_entry, assistant_entry]

    def get_history(self, user_id: UserID) -> list[HistoryEntry]:
        """Snapshot copy of a user's history, oldest first."""
        with self._lock:
            return list(self._histories.get(user_id, ()))

    def clear(self, user_id: UserID) -> int:
        """Forget a user's history. Returns the number of entries removed."""
        with self._lock:
            return len(self._histories.pop(user_id, ()))

    def stats(self) -> dict:
        with self._lock:
            entries = sum(len(h) for h in self._histories.values())
            tokens = sum(m.token_cost for h in self._histories.values() for m in h)
            return {
                "users": len(self._histories),
                "entries": entries,
                "token_cost": tokens,
            }
