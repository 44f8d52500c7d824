"""
Chat policy: which role pairs may exchange messages.

Single rule: students may not message students. Every other pair, including
teacher↔teacher and admin↔admin, is allowed. Pure and stateless.
"""

from __future__ import annotations

from typing import Iterable, List

from backend.identity_access.domain import Identity


def _norm(role: object) -> str:
    return role.strip().lower() if isinstance(role, str) else ""


def is_allowed(sender_role: str, receiver_role: str) -> bool:
    return not (_norm(sender_role) == "student" and _norm(receiver_role) == "student")


def filter_contacts(viewer_role: str, candidates: Iterable[Identity]) -> List[Identity]:
    """Keep the candidates the viewer may message (students never see students)."""
    return [c for c in candidates if is_allowed(viewer_role, c.role)]


__all__ = ["filter_contacts", "is_allowed"]
