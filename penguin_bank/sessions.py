"""MCP session registry."""

from __future__ import annotations

import asyncio
import logging
import secrets
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from .config import SESSION_CAPACITY

LOGGER = logging.getLogger("penguin_bank.sessions")


def new_session_id() -> str:
    """Timestamp plus random suffix. Unique in practice, not a security token."""

    return f"session_{int(time.time() * 1000)}_{secrets.token_hex(6)}"


@dataclass
class Session:
    """Represents an MCP session associated with a connected client."""

    id: str
    initialized: bool = False
    protocol_version: Optional[str] = None
    client_info: Dict[str, Any] = field(default_factory=dict)
    created_at: float = field(default_factory=lambda: time.time())
    last_activity: float = field(default_factory=lambda: time.time())

    def touch(self) -> None:
        """Update last activity timestamp."""

        self.last_activity = time.time()


class SessionRegistry:
    """Bounded session map.

    Sessions are evicted in insertion order once ``capacity`` is exceeded.
    Access does not refresh a session's position.
    """

    def __init__(self, capacity: int = SESSION_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._sessions: "OrderedDict[str, Session]" = OrderedDict()
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    async def get_or_create(self, session_id: Optional[str] = None) -> Session:
        async with self._lock:
            if session_id:
                session = self._sessions.get(session_id)
                if session is not None:
                    session.touch()
                    return session
            else:
                session_id = new_session_id()
            session = Session(id=session_id)
            self._sessions[session_id] = session
            self._evict_if_over_capacity()
        LOGGER.info("Created MCP session %s", session_id)
        return session

    async def get(self, session_id: Optional[str]) -> Optional[Session]:
        if not session_id:
            return None
        async with self._lock:
            return self._sessions.get(session_id)

    async def touch(self, session_id: Optional[str]) -> Optional[Session]:
        session = await self.get(session_id)
        if session is not None:
            session.touch()
        return session

    async def mark_initialized(
        self,
        session_id: Optional[str],
        *,
        protocol_version: Optional[str] = None,
        client_info: Optional[Dict[str, Any]] = None,
    ) -> Session:
        session = await self.get_or_create(session_id)
        session.initialized = True
        if protocol_version:
            session.protocol_version = protocol_version
        if client_info:
            session.client_info = dict(client_info)
        return session

    def _evict_if_over_capacity(self) -> None:
        while len(self._sessions) > self.capacity:
            evicted_id, _ = self._sessions.popitem(last=False)
            LOGGER.info("Evicted MCP session %s", evicted_id)
