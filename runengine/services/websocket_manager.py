import asyncio
import logging
from typing import Any, Dict, Iterable, Set
from fastapi import WebSocket

logger = logging.getLogger(__name__)


class WebSocketManager:
    """
    UI subscribers grouped into one room per session.

    The last `session_state` frame of each session is kept so a socket that
    joins mid-turn sees the current state without waiting for the next change.
    """

    def __init__(self, send_timeout_s: float = 1.5) -> None:
        self._lock = asyncio.Lock()
        self._rooms: Dict[str, Set[WebSocket]] = {}
        self._latest_state: Dict[str, Dict[str, Any]] = {}
        self.send_timeout_s = send_timeout_s

    async def connect(self, session_id: str, websocket: WebSocket) -> None:
        await websocket.accept()
        async with self._lock:
            self._rooms.setdefault(session_id, set()).add(websocket)
            latest = self._latest_state.get(session_id)
        if latest is not None:
            await self._deliver(session_id, [websocket], latest)

    async def disconnect(self, session_id: str, websocket: WebSocket) -> None:
        await self._prune(session_id, [websocket])

    def subscribers(self, session_id: str) -> int:
        return len(self._rooms.get(session_id, ()))

    async def broadcast(self, session_id: str, message: Dict[str, Any]) -> None:
        async with self._lock:
            if message.get("type") == "session_state":
                self._latest_state[session_id] = message
            conns = list(self._rooms.get(session_id, ()))
        if conns:
            await self._deliver(session_id, conns, message)

    async def _deliver(self, session_id: str, conns: list[WebSocket], message: Dict[str, Any]) -> None:
        async def _send(ws: WebSocket) -> None:
            # a stalled UI must not hold up the turn that is publishing
            await asyncio.wait_for(ws.send_json(message), timeout=self.send_timeout_s)

        results = await asyncio.gather(*(_send(ws) for ws in conns), return_exceptions=True)
        dead = [ws for ws, res in zip(conns, results) if isinstance(res, Exception)]
        if dead:
            logger.debug("Dropping %d dead socket(s) from session %s", len(dead), session_id)
            await self._prune(session_id, dead)

    async def _prune(self, session_id: str, sockets: Iterable[WebSocket]) -> None:
        async with self._lock:
            conns = self._rooms.get(session_id)
            if not conns:
                return
            conns.difference_update(sockets)
            if not conns:
                self._rooms.pop(session_id, None)


ws_manager = WebSocketManager()
