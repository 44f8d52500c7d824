"""
Identity domain constants and simple helpers.

Why:
- Centralize allowed roles to avoid drift between the chat core and web layer.
- Give the messaging core one small value type for "who is this connection",
  independent of where the identity came from (join payload, JWT, users table).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

# Keep roles minimal and explicit. Immutable to prevent accidental mutation.
ALLOWED_ROLES = frozenset({"student", "teacher", "admin"})


def normalize_user_id(value: Any) -> str:
    """Return a canonical string id (`10` and `"10"` denote the same user)."""
    if value is None or isinstance(value, bool):
        return ""
    return str(value).strip()


def normalize_role(value: Any) -> Optional[str]:
    """Lower-case a role string; None when it is not an allowed role."""
    if not isinstance(value, str):
        return None
    role = value.strip().lower()
    return role if role in ALLOWED_ROLES else None


@dataclass(frozen=True)
class Identity:
    """Authenticated user record supplied by the auth collaborator.

    Parameters:
        id: Stable user id (string form).
        name: Display name shown to chat peers.
        role: One of ALLOWED_ROLES.
        email: Contact address; never broadcast to other connections.
    """

    id: str
    name: str
    role: str
    email: str = ""

    def presence(self, *, online: bool = True) -> dict:
        """Wire shape used by presence events and snapshots."""
        return {"userId": self.id, "username": self.name, "role": self.role, "isOnline": online}


__all__ = ["ALLOWED_ROLES", "Identity", "normalize_role", "normalize_user_id"]
