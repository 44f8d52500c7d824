"""
Messaging session handler: join / send / history / read / typing / disconnect.

Intent:
    Orchestrate the per-connection chat state machine
    (Connecting → Joined → Sending/Receiving/Typing* → Disconnected) on top of
    the presence registry, the chat policy and a message store. The handler is
    framework-free: the web adapter feeds it decoded events and a connection
    object with an async `send(event, data)`.

Ordering:
    The adapter awaits `handle()` for one event before reading the next frame
    of the same socket, so a client's events are applied in the order sent.
    Store calls are blocking and run in the default executor; each send awaits
    its append before delivering, which keeps one sender's messages to one
    receiver in order.

Errors:
    Every failure becomes a `rejection` event `{reason, code, originalEvent}`
    for the offending connection only. Nothing is dropped silently except
    typing notices for offline receivers.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from functools import partial
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from backend.identity_access.domain import Identity, normalize_role, normalize_user_id
from backend.identity_access.directory import UserDirectoryProtocol
from backend.identity_access.tokens import TokenVerificationError, identity_from_token
from . import policy
from .ports import (
    AlreadyConnected,
    ChatNotAllowed,
    ConnectionProtocol,
    InvalidPayload,
    Message,
    MessageDraft,
    MessageStoreProtocol,
    MessagingError,
    NotAuthenticated,
    StorageError,
)
from .presence import PresenceRegistry

logger = logging.getLogger("cinderella.messaging")


# --- Event names ---------------------------------------------------------------

# client -> server
JOIN = "join"
SEND = "send"
REQUEST_HISTORY = "requestHistory"
MARK_READ = "markRead"
TYPING_START = "typingStart"
TYPING_STOP = "typingStop"

# server -> client
ONLINE_SNAPSHOT = "onlineSnapshot"
USER_ONLINE = "userOnline"
USER_OFFLINE = "userOffline"
MESSAGE_DELIVERED = "messageDelivered"
MESSAGE_ACK = "messageAck"
HISTORY_RESULT = "historyResult"
MARK_READ_RESULT = "markReadResult"
MESSAGES_READ = "messagesRead"
TYPING_NOTICE = "typingNotice"
REJECTION = "rejection"

DUPLICATE_POLICIES = ("evict", "reject")


@dataclass(frozen=True)
class SessionPolicy:
    """Tunable behavior of the session handler.

    Parameters:
        duplicate_sessions: "evict" replaces the registry entry of a user who
            joins again from another connection; "reject" refuses the new join.
        snapshot_includes_self: whether `onlineSnapshot` lists the joiner.
        require_token: identity must come from a verified access token.
        token_secret: HS256 key; None uses JWT_SECRET from the environment.
        max_message_length: upper bound for message bodies (characters).
    """

    duplicate_sessions: str = "evict"
    snapshot_includes_self: bool = True
    require_token: bool = False
    token_secret: Optional[str] = None
    max_message_length: int = 5000


def _require_text(data: dict, key: str, *, label: Optional[str] = None) -> str:
    value = normalize_user_id(data.get(key))
    if not value:
        raise InvalidPayload(f"{label or key} is required")
    return value


class MessagingSessionHandler:
    def __init__(
        self,
        *,
        registry: PresenceRegistry,
        store: MessageStoreProtocol,
        directory: Optional[UserDirectoryProtocol] = None,
        session_policy: Optional[SessionPolicy] = None,
    ) -> None:
        self.registry = registry
        self.store = store
        self.directory = directory
        self.policy = session_policy or SessionPolicy()
        self._dispatch: Dict[str, Callable[[ConnectionProtocol, dict], Awaitable[Any]]] = {
            JOIN: self._on_join,
            SEND: self._on_send,
            REQUEST_HISTORY: self._on_request_history,
            MARK_READ: self._on_mark_read,
            TYPING_START: partial(self._on_typing, is_typing=True),
            TYPING_STOP: partial(self._on_typing, is_typing=False),
        }

    # --- Entry point ------------------------------------------------------------

    async def handle(self, connection: ConnectionProtocol, event: str, data: Any) -> None:
        """Dispatch one inbound event; failures become a rejection for `connection`."""
        try:
            handler = self._dispatch.get(event)
            if handler is None:
                raise InvalidPayload(f"Unknown event '{event}'", code="unknown_event")
            if event != JOIN:
                self._require_joined(connection)
            if data is None:
                data = {}
            if not isinstance(data, dict):
                raise InvalidPayload("Event payload must be an object")
            await handler(connection, data)
        except MessagingError as exc:
            logger.info("chat event rejected conn=%s event=%s code=%s", connection.id, event, exc.code)
            await self.reject(connection, event, exc)
        except Exception:
            logger.exception("chat event failed conn=%s event=%s", connection.id, event)
            await self.reject(connection, event, MessagingError("Internal error while processing the event"))

    async def reject(self, connection: ConnectionProtocol, event: str, exc: MessagingError) -> None:
        await connection.send(REJECTION, {"reason": exc.reason, "code": exc.code, "originalEvent": event})

    # --- Helpers ---------------------------------------------------------------

    async def _call(self, fn, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(fn, *args))

    def _require_joined(self, connection: ConnectionProtocol) -> Identity:
        me = self.registry.lookup_identity(connection.id)
        if me is None:
            raise NotAuthenticated("Join the chat before sending events")
        return me

    async def _lookup_user(self, user_id: str) -> Optional[Identity]:
        if self.directory is None:
            return None
        try:
            return await self._call(self.directory.get_user, user_id)
        except Exception as exc:
            # Unreachable directory: reject instead of trusting the payload claim.
            logger.warning("directory lookup failed: %s", exc.__class__.__name__)
            raise StorageError("User directory is unavailable, please retry") from exc

    async def _safe_send(self, channel: ConnectionProtocol, event: str, data: Any) -> bool:
        """Push to a peer channel; transport failures are logged and reported as False."""
        try:
            return await channel.send(event, data)
        except Exception as exc:  # transport errors differ per server implementation
            logger.debug("chat send failed conn=%s event=%s err=%s", channel.id, event, exc.__class__.__name__)
            return False

    async def _resolve_receiver_role(self, receiver_id: str, claimed: Any) -> str:
        """Receiver role: online identity, then directory, then the payload claim (unknown users only)."""
        online = self.registry.lookup_connection(receiver_id)
        if online is not None:
            ident = self.registry.lookup_identity(online)
            if ident is not None:
                return ident.role
        known = await self._lookup_user(receiver_id)
        if known is not None:
            return known.role
        role = normalize_role(claimed)
        if role is None:
            raise InvalidPayload("receiverRole is missing or unknown")
        return role

    async def _send_read_receipt(self, reader_id: str, peer_id: str, count: int) -> None:
        channel = self.registry.channel_for_user(peer_id)
        if channel is not None:
            await self._safe_send(channel, MESSAGES_READ, {"readerId": reader_id, "count": count})

    # --- join ------------------------------------------------------------------

    def _identity_from_join(self, connection: ConnectionProtocol, data: dict) -> Identity:
        token = data.get("token") or getattr(connection, "token", None)
        claimed_id = normalize_user_id(data.get("userId"))
        if token or self.policy.require_token:
            if not token:
                raise NotAuthenticated("An access token is required to join")
            try:
                ident = identity_from_token(str(token), secret=self.policy.token_secret)
            except TokenVerificationError as exc:
                raise NotAuthenticated(f"Access token rejected ({exc.code})") from exc
            if claimed_id and claimed_id != ident.id:
                raise NotAuthenticated("userId does not match the access token")
            return ident
        if not claimed_id:
            raise InvalidPayload("userId is required", code="invalid_identity")
        role = normalize_role(data.get("role"))
        if role is None:
            raise InvalidPayload("role must be one of admin, teacher, student", code="invalid_identity")
        name = str(data.get("username") or "").strip() or claimed_id
        return Identity(id=claimed_id, name=name, role=role, email=str(data.get("email") or ""))

    async def _on_join(self, connection: ConnectionProtocol, data: dict) -> None:
        await self.join(connection, self._identity_from_join(connection, data))

    async def join(self, connection: ConnectionProtocol, identity: Identity) -> List[Identity]:
        """Register `identity` on `connection` and announce it.

        Returns the snapshot sent to the joiner.
        """
        if not identity.id:
            raise InvalidPayload("userId is required", code="invalid_identity")
        current = self.registry.lookup_connection(identity.id)
        if current is not None and current != connection.id and self.policy.duplicate_sessions == "reject":
            raise AlreadyConnected("This user is already connected from another session")

        previous = self.registry.lookup_identity(connection.id)
        replaced = self.registry.join(connection, identity)
        if replaced is not None:
            logger.info("chat session replaced user=%s old_conn=%s new_conn=%s", identity.id, replaced, connection.id)
        if previous is not None and previous.id != identity.id:
            await self.registry.notify_others(connection.id, USER_OFFLINE, previous.presence(online=False))
        logger.info("chat join user=%s role=%s conn=%s online=%d", identity.id, identity.role, connection.id, len(self.registry))

        await self.registry.notify_others(connection.id, USER_ONLINE, identity.presence())
        snapshot = self.registry.list_online()
        if not self.policy.snapshot_includes_self:
            snapshot = [i for i in snapshot if i.id != identity.id]
        await connection.send(ONLINE_SNAPSHOT, [i.presence() for i in snapshot])
        return snapshot

    # --- send ------------------------------------------------------------------

    async def _on_send(self, connection: ConnectionProtocol, data: dict) -> None:
        assignment = normalize_user_id(data.get("assignmentId")) or None
        await self.send(
            connection,
            receiver_id=_require_text(data, "receiverId"),
            body=data.get("message"),
            receiver_role=data.get("receiverRole"),
            assignment_id=assignment,
            sender_id=normalize_user_id(data.get("senderId")) or None,
            sender_role=data.get("senderRole"),
        )

    async def send(
        self,
        connection: ConnectionProtocol,
        *,
        receiver_id: str,
        body: Any,
        receiver_role: Any = None,
        assignment_id: Optional[str] = None,
        sender_id: Optional[str] = None,
        sender_role: Any = None,
    ) -> Message:
        """Persist a message, deliver it if the receiver is online, ack the sender.

        Permissions:
            The connection must be joined; `sender_id`/`sender_role`, when
            supplied, must match the joined identity. The chat policy is
            checked against trusted roles before anything is stored.
        """
        me = self._require_joined(connection)
        if sender_id and sender_id != me.id:
            raise NotAuthenticated("senderId does not match the joined user")
        if sender_role is not None and normalize_role(sender_role) != me.role:
            raise NotAuthenticated("senderRole does not match the joined user")
        if not isinstance(body, str) or not body.strip():
            raise InvalidPayload("message must be a non-empty string")
        if len(body) > self.policy.max_message_length:
            raise InvalidPayload(f"message exceeds {self.policy.max_message_length} characters")
        receiver_id = normalize_user_id(receiver_id)
        if not receiver_id:
            raise InvalidPayload("receiverId is required")

        resolved_role = await self._resolve_receiver_role(receiver_id, receiver_role)
        if not policy.is_allowed(me.role, resolved_role):
            raise ChatNotAllowed("Students cannot send messages to other students")

        draft = MessageDraft(
            sender_id=me.id,
            receiver_id=receiver_id,
            body=body,
            sender_role=me.role,
            receiver_role=resolved_role,
            assignment_id=assignment_id,
        )
        msg = await self._call(self.store.append, draft)
        payload = msg.to_wire()

        receiver = self.registry.channel_for_user(receiver_id)
        if receiver is not None and receiver.id != connection.id:
            if not await self._safe_send(receiver, MESSAGE_DELIVERED, payload):
                logger.info("chat delivery failed msg=%s receiver=%s; stored for history", msg.id, receiver_id)
        await connection.send(MESSAGE_ACK, payload)
        return msg

    # --- history & read state ---------------------------------------------------

    async def _on_request_history(self, connection: ConnectionProtocol, data: dict) -> None:
        await self.request_history(
            connection,
            other_user_id=_require_text(data, "otherUserId"),
            viewer_id=normalize_user_id(data.get("userId")) or None,
        )

    async def request_history(
        self,
        connection: ConnectionProtocol,
        *,
        other_user_id: str,
        viewer_id: Optional[str] = None,
    ) -> List[Message]:
        """Return the thread with `other_user_id` and mark their messages to us read.

        Opening a conversation is the read signal: messages other→viewer are
        flipped before the thread is loaded, so the result reflects them as read.
        """
        me = self._require_joined(connection)
        if viewer_id and viewer_id != me.id:
            raise NotAuthenticated("userId does not match the joined user")
        other = normalize_user_id(other_user_id)
        if not other:
            raise InvalidPayload("otherUserId is required")
        updated = await self._call(self.store.mark_read, other, me.id)
        thread = await self._call(self.store.history, me.id, other)
        await connection.send(HISTORY_RESULT, [m.to_wire() for m in thread])
        if updated:
            await self._send_read_receipt(me.id, other, updated)
        return thread

    async def _on_mark_read(self, connection: ConnectionProtocol, data: dict) -> None:
        await self.mark_read(connection, peer_id=_require_text(data, "conversationPeerId"))

    async def mark_read(self, connection: ConnectionProtocol, *, peer_id: str) -> int:
        me = self._require_joined(connection)
        peer = normalize_user_id(peer_id)
        if not peer:
            raise InvalidPayload("conversationPeerId is required")
        updated = await self._call(self.store.mark_read, peer, me.id)
        await connection.send(MARK_READ_RESULT, {"conversationPeerId": peer, "updated": updated})
        if updated:
            await self._send_read_receipt(me.id, peer, updated)
        return updated

    # --- typing ----------------------------------------------------------------

    async def _on_typing(self, connection: ConnectionProtocol, data: dict, *, is_typing: bool) -> None:
        await self.typing(connection, receiver_id=_require_text(data, "receiverId"), is_typing=is_typing)

    async def typing(self, connection: ConnectionProtocol, *, receiver_id: str, is_typing: bool) -> bool:
        """Forward a typing notice; best-effort, dropped when the receiver is offline."""
        me = self._require_joined(connection)
        channel = self.registry.channel_for_user(normalize_user_id(receiver_id))
        if channel is None:
            return False
        return await self._safe_send(channel, TYPING_NOTICE, {"userId": me.id, "username": me.name, "isTyping": is_typing})

    # --- disconnect ------------------------------------------------------------

    async def disconnect(self, connection: ConnectionProtocol) -> Optional[Identity]:
        """Forget the connection; announce the user offline if it owned the mapping.

        Always succeeds and is safe to call repeatedly.
        """
        identity = self.registry.remove(connection.id)
        if identity is None:
            return None
        logger.info("chat leave user=%s conn=%s online=%d", identity.id, connection.id, len(self.registry))
        await self.registry.notify_others(connection.id, USER_OFFLINE, identity.presence(online=False))
        return identity

    async def close(self) -> None:
        """Teardown at shutdown: forget every connection."""
        self.registry.clear()


__all__ = [
    "DUPLICATE_POLICIES",
    "MessagingSessionHandler",
    "SessionPolicy",
]
