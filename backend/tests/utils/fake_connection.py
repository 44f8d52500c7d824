"""
In-process stand-in for a chat connection.

Records every outbound ``(event, data)`` pair so tests can assert on what the
session handler sent without a WebSocket. ``alive=False`` simulates a socket
that already went away (sends report failure); ``explode=True`` makes sends
raise like a broken transport.
"""
from __future__ import annotations

from typing import Any, List, Optional, Tuple


class FakeConnection:
    def __init__(self, cid: str, *, token: Optional[str] = None, alive: bool = True, explode: bool = False) -> None:
        self.id = cid
        self.token = token
        self.alive = alive
        self.explode = explode
        self.events: List[Tuple[str, Any]] = []

    async def send(self, event: str, data: Any) -> bool:
        if self.explode:
            raise ConnectionError("socket closed")
        if not self.alive:
            return False
        self.events.append((event, data))
        return True

    def of(self, event: str) -> List[Any]:
        return [d for e, d in self.events if e == event]

    def last(self, event: str) -> Any:
        found = self.of(event)
        assert found, f"no '{event}' event in {[e for e, _ in self.events]}"
        return found[-1]

    def names(self) -> List[str]:
        return [e for e, _ in self.events]

    def clear(self) -> None:
        self.events.clear()


__all__ = ["FakeConnection"]
