"""
Chat API routes: the real-time WebSocket endpoint plus read-only REST helpers.

Why:
    Expose the messaging core to browsers. The WebSocket adapter turns frames
    into `(event, data)` pairs for the session handler and owns the transport
    concerns (framing, per-socket send serialization, disconnect detection).
    The REST routes serve the conversation list, chat-eligible contacts and
    the online list for UIs that render before the socket is up.

Notes:
    - Persistence: Prefers the Postgres-backed store when psycopg and a DSN are
      available; falls back to an in-memory store for tests/local offline work.
      Tests can call `configure` to inject a handler for isolation.
    - Security: When CHAT_REQUIRE_TOKEN=true, REST calls need a bearer token
      whose `id` claim matches the path user; the socket needs a token on join.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional
from uuid import uuid4

from fastapi import APIRouter, Request, WebSocket
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, ValidationError

from backend.identity_access.directory import DBUserDirectory, InMemoryUserDirectory, UserDirectoryProtocol
from backend.identity_access.domain import ALLOWED_ROLES, Identity, normalize_user_id
from backend.identity_access.tokens import TokenVerificationError, bearer_token, identity_from_token
from backend.messaging import policy
from backend.messaging.ports import InvalidPayload, MessageStoreProtocol, StorageError
from backend.messaging.presence import PresenceRegistry
from backend.messaging.session import MessagingSessionHandler
from backend.messaging.store_memory import InMemoryMessageStore
from backend.web.config import ChatSettings, load_chat_settings

chat_router = APIRouter(tags=["Chat"])  # explicit paths below
logger = logging.getLogger("cinderella.web.chat")


# --- Transport adapter -----------------------------------------------------------


class ClientEvent(BaseModel):
    """Inbound frame envelope: {"event": "...", "data": {...}}."""

    event: str = Field(..., min_length=1, max_length=64)
    data: Any = None


class WebSocketConnection:
    """One accepted WebSocket as seen by the messaging core.

    Outbound frames are serialized by a per-socket lock so deliveries from
    several concurrent senders never interleave on the wire.
    """

    def __init__(self, websocket: WebSocket, *, token: Optional[str] = None) -> None:
        self.id = uuid4().hex
        self.token = token
        self.closed = False
        self._ws = websocket
        self._lock = asyncio.Lock()

    async def send(self, event: str, data: Any) -> bool:
        if self.closed:
            return False
        async with self._lock:
            try:
                await self._ws.send_json({"event": event, "data": data})
                return True
            except Exception as exc:  # transport errors differ per server implementation
                logger.debug("websocket send failed conn=%s err=%s", self.id, exc.__class__.__name__)
                self.closed = True
                return False


# --- Wiring ------------------------------------------------------------------------

# Try to use DB-backed adapters when available; fallback to in-memory for dev/tests
try:  # late import to avoid hard dependency during unit tests
    from backend.messaging.repo_db import DBMessageStore  # type: ignore
except Exception as exc:  # pragma: no cover - import failures in dev/test envs
    DBMessageStore = None  # type: ignore
    _DB_STORE_IMPORT_ERROR = exc
else:
    _DB_STORE_IMPORT_ERROR = None


def _build_default_store(settings: ChatSettings) -> MessageStoreProtocol:
    """Prefer the DB-backed store when configured; fall back to in-memory."""
    if settings.messages_backend != "db":
        return InMemoryMessageStore()
    if DBMessageStore is None:
        if _DB_STORE_IMPORT_ERROR:
            logger.warning("Message store import failed: %s", _DB_STORE_IMPORT_ERROR)
        return InMemoryMessageStore()
    try:
        store = DBMessageStore()
        if settings.auto_migrate:
            store.ensure_schema()
        return store
    except (RuntimeError, StorageError) as exc:
        if settings.prod_like:
            raise
        logger.warning("Message store unavailable (%s); using in-memory fallback", exc)
        return InMemoryMessageStore()


def _build_default_directory(settings: ChatSettings) -> UserDirectoryProtocol:
    if settings.messages_backend != "db":
        return InMemoryUserDirectory()
    try:
        return DBUserDirectory()
    except RuntimeError as exc:
        logger.warning("User directory unavailable (%s); using empty in-memory directory", exc)
        return InMemoryUserDirectory()


def build_default_handler(settings: Optional[ChatSettings] = None) -> MessagingSessionHandler:
    settings = settings or load_chat_settings()
    return MessagingSessionHandler(
        registry=PresenceRegistry(),
        store=_build_default_store(settings),
        directory=_build_default_directory(settings),
        session_policy=settings.session_policy(),
    )


_HANDLER: Optional[MessagingSessionHandler] = None


def configure(handler: Optional[MessagingSessionHandler]) -> None:
    """Install the session handler (startup wiring or test isolation); None resets."""
    global _HANDLER
    _HANDLER = handler


def is_configured() -> bool:
    return _HANDLER is not None


def get_session_handler() -> MessagingSessionHandler:
    """Lazy accessor so importing the router never touches the database."""
    global _HANDLER
    if _HANDLER is None:
        configure(build_default_handler())
    return _HANDLER  # type: ignore[return-value]


# Disconnect broadcasts still running after their socket task was cancelled.
_PENDING_RELEASES: set[asyncio.Task] = set()


async def _release(handler: MessagingSessionHandler, conn: WebSocketConnection) -> None:
    """Disconnect `conn` from presence and announce it offline.

    The work runs in a tracked task awaited through `asyncio.shield`, so the
    `userOffline` broadcast completes even when the server cancels the socket
    task (client teardown, shutdown).
    """
    task = asyncio.ensure_future(handler.disconnect(conn))
    _PENDING_RELEASES.add(task)
    task.add_done_callback(_PENDING_RELEASES.discard)
    await asyncio.shield(task)


async def shutdown() -> None:
    """Finish pending disconnect broadcasts, then tear down presence state."""
    global _HANDLER
    if _PENDING_RELEASES:
        await asyncio.gather(*list(_PENDING_RELEASES), return_exceptions=True)
    if _HANDLER is not None:
        await _HANDLER.close()
    configure(None)


# --- WebSocket endpoint --------------------------------------------------------------


@chat_router.websocket("/ws/chat")
async def chat_socket(websocket: WebSocket, token: Optional[str] = None):
    """Bidirectional chat channel.

    Protocol:
        Frames are JSON envelopes `{"event": name, "data": payload}` in both
        directions. Events are processed one at a time per socket, in order.
        Malformed frames produce a `rejection`; the socket stays open.
    """
    handler = get_session_handler()
    await websocket.accept()
    conn = WebSocketConnection(websocket, token=token)
    logger.debug("websocket accepted conn=%s", conn.id)
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
            raw = message.get("text")
            if raw is None:
                await handler.reject(conn, "unknown", InvalidPayload("Frames must be JSON text, not binary"))
                continue
            try:
                frame = ClientEvent.model_validate_json(raw)
            except ValidationError:
                await handler.reject(conn, "unknown", InvalidPayload("Frames must be JSON objects with an 'event' field"))
                continue
            await handler.handle(conn, frame.event, frame.data)
    finally:
        conn.closed = True
        await _release(handler, conn)
        logger.debug("websocket closed conn=%s", conn.id)


# --- REST helpers ---------------------------------------------------------------------


def _private_response(body: Any, *, status_code: int = 200) -> JSONResponse:
    return JSONResponse(body, status_code=status_code, headers={"Cache-Control": "private, no-store"})


def _authorize(request: Request, user_id: str) -> tuple[Optional[Identity], Optional[JSONResponse]]:
    """Resolve the caller when tokens are required.

    Returns `(identity, None)` on success, `(None, None)` when tokens are not
    required, and `(None, error_response)` when the caller may not act as
    `user_id`.
    """
    handler = get_session_handler()
    if not handler.policy.require_token:
        return None, None
    token = bearer_token(request.headers.get("authorization"))
    if not token:
        return None, _private_response({"success": False, "error": "unauthenticated"}, status_code=401)
    try:
        ident = identity_from_token(token, secret=handler.policy.token_secret)
    except TokenVerificationError as exc:
        return None, _private_response({"success": False, "error": exc.code}, status_code=401)
    if ident.id != user_id:
        return None, _private_response({"success": False, "error": "forbidden"}, status_code=403)
    return ident, None


async def _run(fn, *args):
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, fn, *args)


@chat_router.get("/api/chat/online")
async def online_users(request: Request):
    """Current presence snapshot (insertion order)."""
    handler = get_session_handler()
    users = [i.presence() for i in handler.registry.list_online()]
    return _private_response({"success": True, "count": len(users), "users": users})


@chat_router.get("/api/chat/conversations/{user_id}")
async def conversations(request: Request, user_id: str):
    """List the user's conversations, most recent first, with unread counts.

    Peer names and roles come from the presence registry when the peer is
    online, else from the user directory; unknown peers keep their id as name.
    """
    uid = normalize_user_id(user_id)
    _, error = _authorize(request, uid)
    if error:
        return error
    handler = get_session_handler()
    try:
        summaries = await _run(handler.store.conversations, uid)
    except StorageError as exc:
        return _private_response({"success": False, "error": exc.code, "detail": exc.reason}, status_code=503)

    items = []
    for s in summaries:
        peer = None
        cid = handler.registry.lookup_connection(s.peer_id)
        if cid is not None:
            peer = handler.registry.lookup_identity(cid)
        if peer is None and handler.directory is not None:
            try:
                peer = await _run(handler.directory.get_user, s.peer_id)
            except Exception as exc:
                logger.warning("directory lookup failed: %s", exc.__class__.__name__)
        items.append(
            {
                "userId": s.peer_id,
                "username": peer.name if peer else s.peer_id,
                "role": peer.role if peer else None,
                "lastMessage": s.last_message,
                "lastMessageTime": s.last_timestamp.isoformat(),
                "unreadCount": s.unread_count,
                "isOnline": cid is not None,
            }
        )
    return _private_response({"success": True, "conversations": items})


@chat_router.get("/api/chat/available-users/{user_id}/{role}")
async def available_users(request: Request, user_id: str, role: str):
    """Users the caller may chat with (students never see other students).

    Validation:
        - `role` in ALLOWED_ROLES (student, teacher, admin)
    """
    uid = normalize_user_id(user_id)
    role_l = (role or "").strip().lower()
    if role_l not in ALLOWED_ROLES:
        return _private_response({"success": False, "error": "bad_request", "detail": "invalid_role"}, status_code=400)
    caller, error = _authorize(request, uid)
    if error:
        return error
    if caller is not None and caller.role != role_l:
        return _private_response({"success": False, "error": "forbidden"}, status_code=403)
    handler = get_session_handler()
    candidates = []
    if handler.directory is not None:
        try:
            candidates = await _run(lambda: handler.directory.list_users(exclude_id=uid))
        except Exception as exc:
            logger.warning("directory listing failed: %s", exc.__class__.__name__)
            return _private_response({"success": False, "error": "directory_unavailable"}, status_code=503)
    users = [
        {
            "userId": u.id,
            "username": u.name,
            "role": u.role,
            "email": u.email,
            "isOnline": handler.registry.is_online(u.id),
        }
        for u in policy.filter_contacts(role_l, candidates)
        if u.id != uid
    ]
    return _private_response({"success": True, "users": users})
