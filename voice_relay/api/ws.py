import logging

from fastapi import APIRouter, WebSocket

from voice_relay.core.errors import WS_CLOSE_POLICY_VIOLATION
from voice_relay.services.history import SessionHistory
from voice_relay.services.relay_session import RelaySession
from voice_relay.services.upstream import UpstreamConnector
from voice_relay.services.ws_auth import authenticate_websocket

logger = logging.getLogger(__name__)

router = APIRouter()

# Singletons for the process lifetime; sessions themselves are never registered
history = SessionHistory()
connector = UpstreamConnector()


@router.websocket("/ws/realtime")
async def ws_realtime(websocket: WebSocket):
    # Authenticate via Firebase ID token in the query string before accepting
    auth = await authenticate_websocket(websocket)
    if auth is None:
        await websocket.close(code=WS_CLOSE_POLICY_VIOLATION, reason="Unauthorized")
        return

    await websocket.accept()
    logger.info("WebSocket connection accepted for uid=%s", auth.uid)

    session = RelaySession(websocket, auth, connector=connector, history=history)
    await session.run()
