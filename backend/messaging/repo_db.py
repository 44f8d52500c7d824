"""
Postgres-backed message store.

Design:
- Minimal psycopg3 usage; each call opens a short-lived connection.
- Parameterized SQL only; the table name is fixed.
- Driver failures (`psycopg.Error`) surface as `StorageError` so the session
  handler can reject the event without knowing about psycopg.
- Ordering uses `(timestamp, id)`; `id` is a bigserial and breaks ties between
  messages committed within the same clock tick.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional, Tuple
import logging
import os

from .ports import ConversationSummary, Message, MessageDraft, StorageError

try:
    import psycopg
    HAVE_PSYCOPG = True
except Exception:  # pragma: no cover - optional in some dev envs
    psycopg = None  # type: ignore
    HAVE_PSYCOPG = False

logger = logging.getLogger("cinderella.messaging.store")


MESSAGES_DDL = (
    """
    create table if not exists public.messages (
        id bigserial primary key,
        sender_id text not null,
        receiver_id text not null,
        message text not null,
        sender_role text not null,
        receiver_role text not null,
        assignment_id text null,
        timestamp timestamptz not null default now(),
        is_read boolean not null default false
    )
    """,
    """
    create index if not exists messages_pair_ts_idx
        on public.messages (sender_id, receiver_id, timestamp)
    """,
)

_MESSAGE_COLUMNS_SQL = """
    id, sender_id, receiver_id, message, sender_role, receiver_role,
    assignment_id, timestamp, is_read
"""


def _dsn() -> str:
    """Resolve the DSN: context-specific override first, then the app-wide default."""
    candidates = [
        os.getenv("MESSAGES_DATABASE_URL"),
        os.getenv("DATABASE_URL"),
    ]
    for dsn in candidates:
        if dsn:
            return dsn
    raise RuntimeError("Database DSN unavailable for DBMessageStore")


def _as_utc(value) -> datetime:
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _row_to_message(row: Tuple) -> Message:
    return Message(
        id=int(row[0]),
        sender_id=str(row[1]),
        receiver_id=str(row[2]),
        body=row[3],
        sender_role=row[4],
        receiver_role=row[5],
        assignment_id=row[6],
        timestamp=_as_utc(row[7]),
        is_read=bool(row[8]),
    )


class DBMessageStore:
    def __init__(self, dsn: Optional[str] = None) -> None:
        """Initialize a Postgres-backed store.

        Parameters:
            dsn: Optional explicit DSN. When omitted, resolves from env
                 (MESSAGES_DATABASE_URL, then DATABASE_URL).

        Behavior:
            Does not open a connection eagerly; connections are per-call.
        """
        if not HAVE_PSYCOPG:
            raise RuntimeError("psycopg3 is required for DBMessageStore")
        self._dsn = dsn or _dsn()

    def _fail(self, op: str, exc: Exception) -> StorageError:
        logger.warning("message store %s failed: %s", op, exc.__class__.__name__)
        return StorageError("Message store is unavailable, please retry")

    def ensure_schema(self) -> None:
        """Create the messages table and index when missing (idempotent)."""
        try:
            with psycopg.connect(self._dsn) as conn:
                with conn.cursor() as cur:
                    for stmt in MESSAGES_DDL:
                        cur.execute(stmt)
                conn.commit()
        except psycopg.Error as exc:
            raise self._fail("ensure_schema", exc) from exc

    def append(self, draft: MessageDraft) -> Message:
        try:
            with psycopg.connect(self._dsn) as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        f"""
                        insert into public.messages
                            (sender_id, receiver_id, message, sender_role, receiver_role, assignment_id)
                        values (%s, %s, %s, %s, %s, %s)
                        returning {_MESSAGE_COLUMNS_SQL}
                        """,
                        (
                            draft.sender_id,
                            draft.receiver_id,
                            draft.body,
                            draft.sender_role,
                            draft.receiver_role,
                            draft.assignment_id,
                        ),
                    )
                    row = cur.fetchone()
                conn.commit()
        except psycopg.Error as exc:
            raise self._fail("append", exc) from exc
        if not row:
            raise StorageError("Message store did not return the stored message")
        return _row_to_message(row)

    def history(self, user_a: str, user_b: str) -> List[Message]:
        try:
            with psycopg.connect(self._dsn) as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        f"""
                        select {_MESSAGE_COLUMNS_SQL}
                          from public.messages
                         where (sender_id = %s and receiver_id = %s)
                            or (sender_id = %s and receiver_id = %s)
                         order by timestamp asc, id asc
                        """,
                        (user_a, user_b, user_b, user_a),
                    )
                    rows = cur.fetchall() or []
        except psycopg.Error as exc:
            raise self._fail("history", exc) from exc
        return [_row_to_message(r) for r in rows]

    def mark_read(self, from_user_id: str, to_user_id: str) -> int:
        try:
            with psycopg.connect(self._dsn) as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        """
                        update public.messages
                           set is_read = true
                         where sender_id = %s and receiver_id = %s and is_read = false
                        """,
                        (from_user_id, to_user_id),
                    )
                    updated = cur.rowcount
                conn.commit()
        except psycopg.Error as exc:
            raise self._fail("mark_read", exc) from exc
        return max(0, int(updated or 0))

    def conversations(self, user_id: str) -> List[ConversationSummary]:
        try:
            with psycopg.connect(self._dsn) as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        """
                        select peer_id, message, timestamp, unread_count
                          from (
                            select case when sender_id = %s then receiver_id else sender_id end as peer_id,
                                   message,
                                   timestamp,
                                   id,
                                   row_number() over w_desc as rn,
                                   count(*) filter (where receiver_id = %s and is_read = false) over w_all as unread_count
                              from public.messages
                             where sender_id = %s or receiver_id = %s
                            window w_all as (partition by case when sender_id = %s then receiver_id else sender_id end),
                                   w_desc as (partition by case when sender_id = %s then receiver_id else sender_id end
                                              order by timestamp desc, id desc)
                          ) latest
                         where rn = 1
                         order by timestamp desc, id desc
                        """,
                        (user_id, user_id, user_id, user_id, user_id, user_id),
                    )
                    rows = cur.fetchall() or []
        except psycopg.Error as exc:
            raise self._fail("conversations", exc) from exc
        return [
            ConversationSummary(
                peer_id=str(r[0]),
                last_message=r[1],
                last_timestamp=_as_utc(r[2]),
                unread_count=int(r[3] or 0),
            )
            for r in rows
        ]


__all__ = ["DBMessageStore", "MESSAGES_DDL"]
