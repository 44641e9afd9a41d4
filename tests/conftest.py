import asyncio
import json
from typing import Any, Dict, List, Optional

import pytest
from fastapi.websockets import WebSocketState

from voice_relay.services.history import SessionSummary
from voice_relay.services.ws_auth import AuthResult


class FakeClientWebSocket:
    """Enough of starlette's WebSocket for RelaySession."""

    def __init__(self) -> None:
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.sent: List[Dict[str, Any]] = []
        self.client_state = WebSocketState.CONNECTED
        self.application_state = WebSocketState.CONNECTED
        self.close_code: Optional[int] = None
        self.close_reason: Optional[str] = None

    def push(self, event: Dict[str, Any]) -> None:
        self.push_raw(json.dumps(event))

    def push_raw(self, text: str) -> None:
        self.inbox.put_nowait({"type": "websocket.receive", "text": text})

    def disconnect(self) -> None:
        self.inbox.put_nowait({"type": "websocket.disconnect", "code": 1000})

    async def receive(self) -> Dict[str, Any]:
        message = await self.inbox.get()
        if message["type"] == "websocket.disconnect":
            self.client_state = WebSocketState.DISCONNECTED
        return message

    async def send_text(self, text: str) -> None:
        self.sent.append(json.loads(text))

    async def close(self, code: int = 1000, reason: Optional[str] = None) -> None:
        self.close_code = code
        self.close_reason = reason
        self.application_state = WebSocketState.DISCONNECTED


class FakeUpstream:
    """Stands in for a websockets ClientConnection."""

    def __init__(self) -> None:
        self.sent: List[Dict[str, Any]] = []
        self.incoming: asyncio.Queue = asyncio.Queue()
        self.close_code: Optional[int] = None

    def push(self, event: Dict[str, Any]) -> None:
        self.incoming.put_nowait(json.dumps(event))

    def push_raw(self, text: str) -> None:
        self.incoming.put_nowait(text)

    def finish(self) -> None:
        self.incoming.put_nowait(None)

    def fail(self, exc: Exception) -> None:
        self.incoming.put_nowait(exc)

    def sent_types(self) -> List[str]:
        return [e["type"] for e in self.sent]

    async def send(self, text: str) -> None:
        self.sent.append(json.loads(text))

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.close_code = code

    def __aiter__(self):
        return self

    async def __anext__(self) -> str:
        item = await self.incoming.get()
        if item is None:
            raise StopAsyncIteration
        if isinstance(item, Exception):
            raise item
        return item


class FakeConnector:
    def __init__(self, upstream: Any = None, error: Optional[Exception] = None) -> None:
        self.upstream = upstream
        self.error = error
        self.attempts = 0

    async def connect(self):
        self.attempts += 1
        if self.error is not None:
            raise self.error
        return self.upstream


class FakeHistory:
    def __init__(self, error: Optional[Exception] = None) -> None:
        self.saved: List[SessionSummary] = []
        self.error = error

    async def save_summary(self, summary: SessionSummary) -> None:
        if self.error is not None:
            raise self.error
        self.saved.append(summary)


async def wait_until(predicate, timeout: float = 1.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def auth() -> AuthResult:
    return AuthResult(uid="user-1", jlpt_level="N4", grammar_prompt="てもいい")
