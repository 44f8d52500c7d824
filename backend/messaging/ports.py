"""
Ports for the messaging core: message types, protocols, and errors.

Intent:
    Provide framework-agnostic contracts between the session handler, the
    message stores and the transport adapter. Keeping these definitions in a
    dedicated module avoids circular imports and clarifies boundaries.

Design:
    - Value types: MessageDraft, Message, ConversationSummary
    - Protocols: MessageStoreProtocol, ConnectionProtocol
    - Error taxonomy: every failure carries a stable `code` plus a
      human-readable `reason` so the web adapter can build a rejection event.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, List, Optional, Protocol


# ----------------------------- Value types ----------------------------------


@dataclass(frozen=True)
class MessageDraft:
    """A message as submitted by the sender, before the store assigns id/timestamp."""

    sender_id: str
    receiver_id: str
    body: str
    sender_role: str
    receiver_role: str
    assignment_id: Optional[str] = None


@dataclass(frozen=True)
class Message:
    """A persisted chat message. Only `is_read` ever changes after creation."""

    id: int
    sender_id: str
    receiver_id: str
    body: str
    sender_role: str
    receiver_role: str
    assignment_id: Optional[str]
    timestamp: datetime
    is_read: bool = False

    @classmethod
    def from_draft(cls, draft: MessageDraft, *, id: int, timestamp: datetime) -> "Message":
        return cls(
            id=id,
            sender_id=draft.sender_id,
            receiver_id=draft.receiver_id,
            body=draft.body,
            sender_role=draft.sender_role,
            receiver_role=draft.receiver_role,
            assignment_id=draft.assignment_id,
            timestamp=timestamp,
        )

    def mark_read(self) -> "Message":
        return replace(self, is_read=True)

    def to_wire(self) -> dict:
        """camelCase payload pushed to clients (messageAck, messageDelivered, historyResult)."""
        return {
            "id": self.id,
            "senderId": self.sender_id,
            "receiverId": self.receiver_id,
            "message": self.body,
            "senderRole": self.sender_role,
            "receiverRole": self.receiver_role,
            "assignmentId": self.assignment_id,
            "timestamp": _iso(self.timestamp),
            "isRead": self.is_read,
        }


@dataclass(frozen=True)
class ConversationSummary:
    """Latest state of one conversation from a single user's point of view."""

    peer_id: str
    last_message: str
    last_timestamp: datetime
    unread_count: int


def _iso(ts: datetime) -> str:
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).isoformat()


# ----------------------------- Protocols ------------------------------------


class MessageStoreProtocol(Protocol):
    """Durable log of messages and their read state (blocking API)."""

    def append(self, draft: MessageDraft) -> Message:
        ...

    def history(self, user_a: str, user_b: str) -> List[Message]:
        ...

    def mark_read(self, from_user_id: str, to_user_id: str) -> int:
        ...

    def conversations(self, user_id: str) -> List[ConversationSummary]:
        ...


class ConnectionProtocol(Protocol):
    """One live transport channel as seen by the messaging core."""

    id: str

    async def send(self, event: str, data: Any) -> bool:
        """Push one event; returns False when the transport is gone."""
        ...


# ----------------------------- Errors ---------------------------------------


class MessagingError(Exception):
    """Base class for failures surfaced to a client as a rejection."""

    code = "internal_error"

    def __init__(self, reason: str, *, code: Optional[str] = None):
        super().__init__(reason)
        self.reason = reason
        if code:
            self.code = code


class NotAuthenticated(MessagingError):
    """Event received before join completed, or for someone else's identity."""

    code = "not_authenticated"


class InvalidPayload(MessagingError):
    """Malformed or incomplete event payload."""

    code = "invalid_payload"


class ChatNotAllowed(MessagingError):
    """Role pair may not exchange messages."""

    code = "chat_not_allowed"


class AlreadyConnected(MessagingError):
    """Second connection for an identity under the `reject` session policy."""

    code = "already_connected"


class StorageError(MessagingError):
    """Backing store unavailable; the caller may resubmit."""

    code = "storage_error"


__all__ = [
    "AlreadyConnected",
    "ChatNotAllowed",
    "ConnectionProtocol",
    "ConversationSummary",
    "InvalidPayload",
    "Message",
    "MessageDraft",
    "MessageStoreProtocol",
    "MessagingError",
    "NotAuthenticated",
    "StorageError",
]
