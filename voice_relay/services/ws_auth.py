"""
Connection authentication for the realtime relay.

Mobile WebSocket clients cannot attach custom headers during the handshake,
so the Firebase ID token travels in the query string:

    /ws/realtime?token=<id-token>&jlptLevel=N3&grammarPrompt=...
"""
import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException, WebSocket, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from voice_relay.core import firebase
from voice_relay.core.config import settings
from voice_relay.core.errors import AuthenticationError

logger = logging.getLogger(__name__)

_bearer = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class AuthResult:
    uid: str
    jlpt_level: Optional[str] = None
    grammar_prompt: Optional[str] = None


def verify_token(token: Optional[str]) -> str:
    """Verify an ID token and return its subject uid. Raises AuthenticationError."""
    token = (token or "").strip()
    if not token:
        raise AuthenticationError("No token provided")
    try:
        decoded = firebase.verify_firebase_token(token)
    except Exception as e:
        raise AuthenticationError(f"Token verification failed: {e}") from e
    uid = decoded.get("uid") if isinstance(decoded, dict) else None
    if not uid:
        raise AuthenticationError("Token has no uid claim")
    return uid


def _optional_param(websocket: WebSocket, name: str) -> Optional[str]:
    value = websocket.query_params.get(name)
    return value or None


async def authenticate_websocket(websocket: WebSocket) -> Optional[AuthResult]:
    """
    Return the verified identity and session parameters, or None when the
    connection must be refused. Never closes the socket itself.
    """
    try:
        uid = verify_token(websocket.query_params.get("token"))
    except AuthenticationError as e:
        logger.warning("WebSocket authentication failed: %s", e)
        return None

    result = AuthResult(
        uid=uid,
        jlpt_level=_optional_param(websocket, "jlptLevel"),
        grammar_prompt=_optional_param(websocket, "grammarPrompt"),
    )
    logger.info(
        "WebSocket authenticated uid=%s jlptLevel=%s hasGrammarPrompt=%s",
        result.uid, result.jlpt_level, bool(result.grammar_prompt),
    )
    return result


async def get_current_uid(
        creds: Optional[HTTPAuthorizationCredentials] = Depends(_bearer),
) -> Optional[str]:
    """HTTP counterpart of the WebSocket check, using an Authorization: Bearer header."""
    if not settings.REQUIRE_AUTH_FOR_CONVERSION:
        return None
    try:
        return verify_token(creds.credentials if creds else None)
    except AuthenticationError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error": "Unauthorized", "message": str(e)},
        )
