import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from runengine.core.errors import UnknownSessionError
from runengine.services.orchestrator import orchestrator_manager
from runengine.services.session_store import session_store
from runengine.services.websocket_manager import ws_manager

logger = logging.getLogger(__name__)

router = APIRouter(tags=["ws"])


@router.websocket("/ws/{session_id}")
async def websocket_endpoint(websocket: WebSocket, session_id: str):
    await ws_manager.connect(session_id, websocket)
    try:
        while True:
            msg = await websocket.receive_text()

            # optional keepalive
            if msg == "ping":
                await websocket.send_text("pong")
    except WebSocketDisconnect:
        pass
    finally:
        await ws_manager.disconnect(session_id, websocket)


@router.websocket("/ws/{session_id}/channel")
async def channel_endpoint(websocket: WebSocket, session_id: str):
    """Out-of-band agent activity pushed by the backend."""
    try:
        session = session_store.get(session_id)
    except UnknownSessionError:
        await websocket.close(code=4404)
        return

    await websocket.accept()
    orchestrator = orchestrator_manager.get()
    try:
        while True:
            raw = await websocket.receive_text()
            await orchestrator.ingest_channel(session, raw)
    except WebSocketDisconnect:
        logger.debug("Channel for session %s closed", session_id)
