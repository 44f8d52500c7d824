"""In-memory message store for tests and offline development."""

from __future__ import annotations

from datetime import datetime, timezone
import itertools
import threading
from typing import Callable, Dict, List, Optional

from .ports import ConversationSummary, Message, MessageDraft, StorageError


def _now() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryMessageStore:
    """Thread-safe list-backed store.

    The session handler calls stores from executor threads, hence the lock.
    Ids increase monotonically and act as tie-breaker when two messages carry
    the same timestamp.
    """

    def __init__(self, clock: Optional[Callable[[], datetime]] = None) -> None:
        self._clock = clock or _now
        self._lock = threading.Lock()
        self._messages: List[Message] = []
        self._ids = itertools.count(1)
        # Tests flip this to simulate an unreachable backing store.
        self.available = True

    def _check(self) -> None:
        if not self.available:
            raise StorageError("Message store is unavailable")

    def append(self, draft: MessageDraft) -> Message:
        with self._lock:
            self._check()
            msg = Message.from_draft(draft, id=next(self._ids), timestamp=self._clock())
            self._messages.append(msg)
            return msg

    def history(self, user_a: str, user_b: str) -> List[Message]:
        pair = {user_a, user_b}
        with self._lock:
            self._check()
            rows = [m for m in self._messages if {m.sender_id, m.receiver_id} == pair]
        return sorted(rows, key=lambda m: (m.timestamp, m.id))

    def mark_read(self, from_user_id: str, to_user_id: str) -> int:
        updated = 0
        with self._lock:
            self._check()
            for idx, m in enumerate(self._messages):
                if m.sender_id == from_user_id and m.receiver_id == to_user_id and not m.is_read:
                    self._messages[idx] = m.mark_read()
                    updated += 1
        return updated

    def conversations(self, user_id: str) -> List[ConversationSummary]:
        latest: Dict[str, Message] = {}
        unread: Dict[str, int] = {}
        with self._lock:
            self._check()
            for m in self._messages:
                if m.sender_id == user_id:
                    peer = m.receiver_id
                elif m.receiver_id == user_id:
                    peer = m.sender_id
                else:
                    continue
                cur = latest.get(peer)
                if cur is None or (m.timestamp, m.id) > (cur.timestamp, cur.id):
                    latest[peer] = m
                if m.receiver_id == user_id and not m.is_read:
                    unread[peer] = unread.get(peer, 0) + 1
        summaries = [
            ConversationSummary(
                peer_id=peer,
                last_message=m.body,
                last_timestamp=m.timestamp,
                unread_count=unread.get(peer, 0),
            )
            for peer, m in latest.items()
        ]
        summaries.sort(key=lambda s: (s.last_timestamp, latest[s.peer_id].id), reverse=True)
        return summaries

    def all_messages(self) -> List[Message]:
        """Snapshot for diagnostics and tests."""
        with self._lock:
            return list(self._messages)


__all__ = ["InMemoryMessageStore"]
