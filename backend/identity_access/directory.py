"""
Directory adapter for user lookup (school `users` table).

Why:
    Chat needs two things from the user directory owned by the auth
    collaborator: resolving a user id to an Identity (e.g., the role of an
    offline receiver) and listing possible chat contacts. This module wraps the
    minimal queries behind a small protocol so tests and offline development
    can use the in-memory variant.

Security:
    - Read-only access; the directory never returns password hashes.
    - Intended for server-side use only.
"""
from __future__ import annotations

from typing import Dict, Iterable, List, Optional, Protocol, Tuple
import logging
import os
import re

from .domain import Identity, normalize_role, normalize_user_id

try:
    import psycopg
    HAVE_PSYCOPG = True
except Exception:  # pragma: no cover - optional in some dev envs
    psycopg = None  # type: ignore
    HAVE_PSYCOPG = False

logger = logging.getLogger("cinderella.identity_access")


_splitter = re.compile(r"[^A-Za-z0-9]+")


def humanize_identifier(s: str) -> str:
    """Turn an email/username into a human display name.

    Rules:
    - For emails, use the part before '@'.
    - Split on non-alphanumeric separators (._- etc.).
    - Title-case each token and join with a single space.
    - Return single word title-cased if nothing to split.
    """
    if not s:
        return ""
    s = str(s)
    if "@" in s:
        s = s.split("@", 1)[0]
    parts = [p for p in _splitter.split(s) if p]
    if not parts:
        return ""
    return " ".join(p[:1].upper() + p[1:].lower() for p in parts)


def _display_name(row: dict) -> str:
    # 1) explicit username
    uname = (row.get("username") or "").strip()
    if uname:
        return uname
    # 2) first + last names
    first = (row.get("firstname") or "").strip()
    last = (row.get("sirname") or "").strip()
    if first or last:
        return " ".join([p for p in (first, last) if p]).strip()
    # 3) email humanized
    email = (row.get("email") or "").strip()
    if email:
        h = humanize_identifier(email)
        if h:
            return h
    # 4) final fallback
    return "Unknown"


def identity_from_row(row: dict) -> Optional[Identity]:
    """Map a users-table row to an Identity; None for unusable rows."""
    user_id = normalize_user_id(row.get("id"))
    role = normalize_role(row.get("role"))
    if not user_id or role is None:
        return None
    return Identity(id=user_id, name=_display_name(row), role=role, email=str(row.get("email") or ""))


class UserDirectoryProtocol(Protocol):
    def get_user(self, user_id: str) -> Optional[Identity]:
        ...

    def list_users(self, *, exclude_id: Optional[str] = None) -> List[Identity]:
        ...


class InMemoryUserDirectory:
    """Dictionary-backed directory for tests and local development."""

    def __init__(self, users: Iterable[Identity] = ()) -> None:
        self._users: Dict[str, Identity] = {}
        for user in users:
            self.add(user)

    def add(self, user: Identity) -> None:
        self._users[user.id] = user

    def get_user(self, user_id: str) -> Optional[Identity]:
        return self._users.get(normalize_user_id(user_id))

    def list_users(self, *, exclude_id: Optional[str] = None) -> List[Identity]:
        excluded = normalize_user_id(exclude_id)
        return [u for u in self._users.values() if u.id != excluded]


def _dsn() -> str:
    candidates = [
        os.getenv("USERS_DATABASE_URL"),
        os.getenv("DATABASE_URL"),
    ]
    for dsn in candidates:
        if dsn:
            return dsn
    raise RuntimeError("Database DSN unavailable for DBUserDirectory")


_USER_COLUMNS_SQL = "id::text, username, email, role, firstname, sirname"


def _row_to_dict(row: Tuple) -> dict:
    return {
        "id": row[0],
        "username": row[1],
        "email": row[2],
        "role": row[3],
        "firstname": row[4],
        "sirname": row[5],
    }


class DBUserDirectory:
    """Postgres-backed directory reading `public.users`.

    Design:
        Minimal psycopg3 usage; each call opens a short-lived connection and
        returns Identity values so callers never see raw rows.
    """

    def __init__(self, dsn: Optional[str] = None) -> None:
        if not HAVE_PSYCOPG:
            raise RuntimeError("psycopg3 is required for DBUserDirectory")
        self._dsn = dsn or _dsn()

    def get_user(self, user_id: str) -> Optional[Identity]:
        uid = normalize_user_id(user_id)
        if not uid:
            return None
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"select {_USER_COLUMNS_SQL} from public.users where id::text = %s",
                    (uid,),
                )
                row = cur.fetchone()
        if not row:
            return None
        return identity_from_row(_row_to_dict(row))

    def list_users(self, *, exclude_id: Optional[str] = None) -> List[Identity]:
        excluded = normalize_user_id(exclude_id)
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"select {_USER_COLUMNS_SQL} from public.users where id::text <> %s order by username, id",
                    (excluded,),
                )
                rows = cur.fetchall() or []
        users: List[Identity] = []
        for row in rows:
            ident = identity_from_row(_row_to_dict(row))
            if ident is not None:
                users.append(ident)
            else:
                logger.debug("Skipping users row with unknown role or id")
        return users
