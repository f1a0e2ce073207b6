"""
Per-user live push channel.

Producers (the realtime worker, the intervention engine) run on ordinary
threads; WebSocket connections live on the server's asyncio loop.
``publish`` is safe to call from any thread: it records the envelope in a
short per-user backlog and hands delivery to the loop with
``asyncio.run_coroutine_threadsafe``.  A dead socket is dropped on the
first failed send.

Envelope: ``{"type": ..., "payload": {...}, "timestamp": ISO-8601}``.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections import defaultdict, deque
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Optional, Set

log = logging.getLogger("live_channel")

BACKLOG_SIZE = 50


def make_envelope(event_type: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "type": event_type,
        "payload": payload,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


class LiveChannel:
    def __init__(self, backlog_size: int = BACKLOG_SIZE):
        self.backlog_size = backlog_size
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._sockets: Dict[str, Set[Any]] = defaultdict(set)
        self._backlog: Dict[str, Deque[Dict[str, Any]]] = {}
        self._lock = threading.Lock()

    def bind_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop

    # ─── Connections (called on the event loop) ──────────────

    def connect(self, user_id: str, websocket: Any) -> None:
        with self._lock:
            self._sockets[user_id].add(websocket)
        log.info("Live connection opened for %s", user_id)

    def disconnect(self, user_id: str, websocket: Any) -> None:
        with self._lock:
            sockets = self._sockets.get(user_id)
            if sockets is not None:
                sockets.discard(websocket)
                if not sockets:
                    del self._sockets[user_id]
        log.info("Live connection closed for %s", user_id)

    def is_connected(self, user_id: str) -> bool:
        with self._lock:
            return bool(self._sockets.get(user_id))

    # ─── Publishing (any thread) ─────────────────────────────

    def publish(self, user_id: str, event_type: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        envelope = make_envelope(event_type, payload)
        with self._lock:
            backlog = self._backlog.get(user_id)
            if backlog is None:
                backlog = self._backlog[user_id] = deque(maxlen=self.backlog_size)
            backlog.append(envelope)
            sockets = list(self._sockets.get(user_id, ()))

        if not sockets or self._loop is None or self._loop.is_closed():
            log.debug("No live connection for %s; %s kept in backlog", user_id, event_type)
            return envelope

        for ws in sockets:
            asyncio.run_coroutine_threadsafe(self._send(user_id, ws, envelope), self._loop)
        return envelope

    def backlog(self, user_id: str) -> List[Dict[str, Any]]:
        with self._lock:
            return list(self._backlog.get(user_id, ()))

    async def _send(self, user_id: str, websocket: Any, envelope: Dict[str, Any]) -> None:
        try:
            await websocket.send_json(envelope)
        except Exception as e:
            log.warning("Dropping live connection for %s: %s", user_id, e)
            self.disconnect(user_id, websocket)
