"""
In-memory presence registry: who is online on which connection.

Why:
    The chat needs O(1) answers to "is user X online, and on which socket?"
    and "which user does this socket belong to?". Both directions live here,
    injected into the session handler instead of module-level globals, so the
    lifecycle follows the app (created at startup, cleared at shutdown).

Invariant:
    For every entry user_id → connection_id there is exactly one reverse entry
    connection_id → Identity. Mutations contain no `await`, so on a single
    event loop each one is applied atomically relative to other coroutines.

Overwrite semantics:
    A later join for the same user replaces the forward entry and drops the
    stale connection's reverse entry. The stale socket is not closed; it simply
    stops being "joined", and its eventual disconnect cannot evict the newer
    entry.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional

from backend.identity_access.domain import Identity
from .ports import ConnectionProtocol

logger = logging.getLogger("cinderella.messaging")


class PresenceRegistry:
    def __init__(self) -> None:
        # user_id -> connection_id (dict keeps insertion order for list_online)
        self._by_user: Dict[str, str] = {}
        # connection_id -> Identity
        self._by_connection: Dict[str, Identity] = {}
        # connection_id -> transport channel
        self._channels: Dict[str, ConnectionProtocol] = {}

    def join(self, connection: ConnectionProtocol, identity: Identity) -> Optional[str]:
        """Bind `connection` to `identity`; return the replaced connection id, if any."""
        cid = connection.id
        previous_identity = self._by_connection.get(cid)
        if previous_identity is not None and previous_identity.id != identity.id:
            # Same socket re-joins as someone else: drop the old binding first.
            if self._by_user.get(previous_identity.id) == cid:
                del self._by_user[previous_identity.id]

        replaced = self._by_user.get(identity.id)
        if replaced is not None and replaced != cid:
            self._by_connection.pop(replaced, None)
            self._channels.pop(replaced, None)
            # Re-insert so list_online reflects the latest join order.
            del self._by_user[identity.id]
        else:
            replaced = None

        self._by_user[identity.id] = cid
        self._by_connection[cid] = identity
        self._channels[cid] = connection
        return replaced

    def lookup_connection(self, user_id: str) -> Optional[str]:
        return self._by_user.get(user_id)

    def lookup_identity(self, connection_id: str) -> Optional[Identity]:
        return self._by_connection.get(connection_id)

    def channel(self, connection_id: str) -> Optional[ConnectionProtocol]:
        return self._channels.get(connection_id)

    def channel_for_user(self, user_id: str) -> Optional[ConnectionProtocol]:
        cid = self._by_user.get(user_id)
        return self._channels.get(cid) if cid is not None else None

    def remove(self, connection_id: str) -> Optional[Identity]:
        """Forget `connection_id`.

        Returns the identity only when this connection still owned the user's
        current mapping (i.e., the user actually went offline). Idempotent.
        """
        identity = self._by_connection.pop(connection_id, None)
        self._channels.pop(connection_id, None)
        if identity is None:
            return None
        if self._by_user.get(identity.id) != connection_id:
            return None
        del self._by_user[identity.id]
        return identity

    def list_online(self) -> List[Identity]:
        return [self._by_connection[cid] for cid in self._by_user.values() if cid in self._by_connection]

    def is_online(self, user_id: str) -> bool:
        return user_id in self._by_user

    def __len__(self) -> int:
        return len(self._by_user)

    async def notify_others(self, exclude_connection_id: Optional[str], event: str, data: Any) -> int:
        """Send one event to every joined connection except the excluded one.

        Sends run concurrently; a failed send is logged and ignored because the
        failing socket's own receive loop performs its disconnect.
        Returns the number of successful deliveries.
        """
        targets = [ch for cid, ch in list(self._channels.items()) if cid != exclude_connection_id]
        if not targets:
            return 0
        results = await asyncio.gather(*[ch.send(event, data) for ch in targets], return_exceptions=True)
        delivered = 0
        for ch, ok in zip(targets, results):
            if ok is True:
                delivered += 1
            else:
                logger.debug("presence notify failed conn=%s event=%s", ch.id, event)
        return delivered

    def clear(self) -> None:
        self._by_user.clear()
        self._by_connection.clear()
        self._channels.clear()


__all__ = ["PresenceRegistry"]
