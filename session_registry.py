"""Registry of active sub-chat turns and their cancellation."""
from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional

logger = logging.getLogger(__name__)

REMOTE_ABORT_TIMEOUT = 5.0

AbortHandle = Callable[[], None]
RemoteAbort = Callable[[str], Awaitable[None]]


@dataclass
class LogicalSession:
    sub_chat_id: str
    abort: AbortHandle
    session_id: Optional[str] = None


class SessionRegistry:
    """Active turns keyed by sub-chat id, shared by the turn and cancel paths."""

    def __init__(
        self,
        remote_abort: Optional[RemoteAbort] = None,
        remote_timeout: float = REMOTE_ABORT_TIMEOUT,
    ) -> None:
        self.remote_abort = remote_abort
        self.remote_timeout = remote_timeout
        self._entries: Dict[str, LogicalSession] = {}
        self._lock = threading.Lock()

    def register(self, sub_chat_id: str, abort: AbortHandle, session_id: Optional[str] = None) -> None:
        with self._lock:
            self._entries[sub_chat_id] = LogicalSession(sub_chat_id, abort, session_id)

    def update_session_id(self, sub_chat_id: str, session_id: str) -> None:
        with self._lock:
            entry = self._entries.get(sub_chat_id)
            if entry:
                entry.session_id = session_id

    def session_id(self, sub_chat_id: str) -> Optional[str]:
        with self._lock:
            entry = self._entries.get(sub_chat_id)
            return entry.session_id if entry else None

    def is_active(self, sub_chat_id: str) -> bool:
        with self._lock:
            return sub_chat_id in self._entries

    def active(self) -> list[str]:
        with self._lock:
            return sorted(self._entries)

    def remove(self, sub_chat_id: str, abort: Optional[AbortHandle] = None) -> None:
        """Drop the entry; with ``abort`` given, only if it still belongs to that turn."""
        with self._lock:
            entry = self._entries.get(sub_chat_id)
            if entry is None:
                return
            if abort is not None and entry.abort != abort:
                return
            del self._entries[sub_chat_id]

    async def cancel(self, sub_chat_id: str) -> bool:
        with self._lock:
            entry = self._entries.pop(sub_chat_id, None)
        if entry is None:
            return False

        try:
            entry.abort()
        except Exception:
            logger.exception("local abort failed for %s", sub_chat_id)

        if entry.session_id and self.remote_abort is not None:
            try:
                await asyncio.wait_for(self.remote_abort(entry.session_id), timeout=self.remote_timeout)
            except Exception as exc:
                logger.warning("remote abort of session %s failed: %s", entry.session_id, exc)
        return True
