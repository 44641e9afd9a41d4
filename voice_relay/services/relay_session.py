"""
RelaySession bridges one client websocket to one upstream realtime connection.

    client ws  <->  RelaySession  <->  upstream realtime API

Each session runs four tasks: a reader and a writer per socket. Readers parse
frames, update bookkeeping and enqueue the original frame text on the other
side's outbox. Only the writer task ever writes to (or closes) its socket.
"""
import asyncio
import enum
import json
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Set, Union

from fastapi import WebSocket, WebSocketDisconnect
from fastapi.websockets import WebSocketState
from websockets.exceptions import ConnectionClosed, ConnectionClosedError

from voice_relay.core.config import Settings, settings as default_settings
from voice_relay.core.errors import (
    ProtocolParseError,
    UpstreamConnectError,
    WS_CLOSE_INTERNAL_ERROR,
    WS_CLOSE_INVALID_DATA,
    WS_CLOSE_NORMAL,
    WS_CLOSE_UPSTREAM_CLOSED,
)
from voice_relay.models.events import (
    AudioTranscriptDelta,
    AudioTranscriptDone,
    ErrorEvent,
    InputAudioBufferAppend,
    InputAudioBufferClear,
    InputAudioBufferCommit,
    SessionCreated,
    SessionUpdated,
    SpeechStarted,
    SpeechStopped,
    TextDelta,
    error_event,
    parse_client_event,
    parse_server_event,
    response_create_event,
    session_update_event,
)
from voice_relay.services.history import SessionHistory, SessionSummary, build_summary_text
from voice_relay.services.instructions import build_instructions
from voice_relay.services.upstream import UpstreamConnector, build_session_config
from voice_relay.services.ws_auth import AuthResult

logger = logging.getLogger(__name__)

WRITER_DRAIN_TIMEOUT_SEC = 5.0

# Strong references to fire-and-forget summary saves
_background_tasks: Set[asyncio.Task] = set()


class SessionState(str, enum.Enum):
    CONNECTING = "connecting"
    CONFIGURING = "configuring"
    ACTIVE = "active"
    CLOSING = "closing"
    CLOSED = "closed"
    FAILED = "failed"


class Ending(enum.Enum):
    CLIENT_CLOSED = "client_closed"
    CLIENT_FAILED = "client_failed"
    UPSTREAM_CLOSED = "upstream_closed"
    UPSTREAM_FAILED = "upstream_failed"


@dataclass(frozen=True)
class _Close:
    code: int
    reason: str = ""


Outgoing = Union[str, _Close]


def _b64_decoded_len(data: str) -> int:
    data = data.strip()
    return max(0, len(data) * 3 // 4 - data[-2:].count("="))


def _as_text(frame: Union[str, bytes]) -> str:
    return frame if isinstance(frame, str) else frame.decode("utf-8")


class RelaySession:

    def __init__(
            self,
            client_ws: WebSocket,
            auth: AuthResult,
            *,
            connector: Optional[UpstreamConnector] = None,
            history: Optional[SessionHistory] = None,
            settings: Settings = default_settings,
    ):
        self.session_id = f"rt_{int(time.time() * 1000)}_{uuid.uuid4().hex[:7]}"
        self.uid = auth.uid
        self.jlpt_level = auth.jlpt_level
        self.grammar_prompt = auth.grammar_prompt
        self.state = SessionState.CONNECTING
        self.created_at = time.time()
        self.transcript: List[str] = []
        self.chunks_since_commit = 0
        self.bytes_since_commit = 0
        self.summary_task: Optional[asyncio.Task] = None

        self._settings = settings
        self._connector = connector or UpstreamConnector(settings)
        self._history = history
        self._client_ws = client_ws
        self._upstream = None
        self._client_out: "asyncio.Queue[Outgoing]" = asyncio.Queue(maxsize=settings.OUTBOX_MAX_FRAMES)
        self._upstream_out: "asyncio.Queue[Outgoing]" = asyncio.Queue(maxsize=settings.OUTBOX_MAX_FRAMES)
        self._failure: Optional[str] = None

        logger.info(
            "[%s] Session created uid=%s jlptLevel=%s hasGrammarPrompt=%s",
            self.session_id, self.uid, self.jlpt_level, bool(self.grammar_prompt),
        )

    # Lifecycle

    async def run(self):
        """Drive the session from connect to close. Returns once both sides are shut."""
        tasks: List[asyncio.Task] = []
        client_writer = asyncio.create_task(self._drain(self._client_out, self._send_client, self._close_client))
        tasks.append(client_writer)
        try:
            try:
                self._upstream = await self._connector.connect()
            except UpstreamConnectError as e:
                logger.error("[%s] Upstream connect failed: %s", self.session_id, e)
                self._set_state(SessionState.FAILED)
                self._enqueue_client_error("Failed to connect to realtime service")
                self._enqueue_control(self._client_out, _Close(WS_CLOSE_INTERNAL_ERROR, "Upstream unavailable"))
                await self._finish_writers([client_writer])
                return

            upstream_writer = asyncio.create_task(
                self._drain(self._upstream_out, self._send_upstream, self._close_upstream)
            )
            tasks.append(upstream_writer)

            self._set_state(SessionState.CONFIGURING)
            if not self._configure():
                self._set_state(SessionState.FAILED)
                self._enqueue_client_error("Failed to configure realtime session")
                self._enqueue_control(self._client_out, _Close(WS_CLOSE_INTERNAL_ERROR, "Configuration failed"))
                self._enqueue_control(self._upstream_out, _Close(WS_CLOSE_NORMAL))
                await self._finish_writers([client_writer, upstream_writer])
                return
            self._set_state(SessionState.ACTIVE)

            readers = [
                asyncio.create_task(self._pump_client()),
                asyncio.create_task(self._pump_upstream()),
            ]
            tasks.extend(readers)
            done, pending = await asyncio.wait(readers, return_when=asyncio.FIRST_COMPLETED)
            finished = next(iter(done))
            if finished.exception() is not None:
                logger.error("[%s] Relay loop crashed", self.session_id, exc_info=finished.exception())
                self._failure = "Internal relay error"
                ending = Ending.CLIENT_FAILED if finished is readers[0] else Ending.UPSTREAM_FAILED
            else:
                ending = finished.result()

            # Release the other side's listener before tearing down
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.wait(pending)

            self._teardown(ending)
            await self._finish_writers([client_writer, upstream_writer])
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            if self.state != SessionState.FAILED:
                self._set_state(SessionState.CLOSED)
            logger.info("[%s] Session ended: %s", self.session_id, self.info())

    def _configure(self) -> bool:
        instructions = build_instructions(
            self.jlpt_level,
            self.grammar_prompt,
            language=self._settings.TARGET_LANGUAGE,
            persona=self._settings.PERSONA_NAME,
        )
        try:
            frame = json.dumps(session_update_event(build_session_config(instructions, self._settings)))
        except (TypeError, ValueError) as e:
            logger.error("[%s] Invalid session configuration: %s", self.session_id, e)
            return False
        self._upstream_out.put_nowait(frame)
        logger.info(
            "[%s] Session configured jlptLevel=%s instructions=%r",
            self.session_id, self.jlpt_level, instructions[:100] + "...",
        )
        return True

    def _teardown(self, ending: Ending):
        self._set_state(SessionState.CLOSING)
        logger.info("[%s] Tearing down: %s", self.session_id, ending.value)

        if ending in (Ending.CLIENT_CLOSED, Ending.CLIENT_FAILED):
            if ending is Ending.CLIENT_FAILED:
                self._set_state(SessionState.FAILED)
                self._enqueue_client_error(self._failure or "Invalid message format")
                self._enqueue_control(self._client_out, _Close(WS_CLOSE_INVALID_DATA, "Invalid message format"))
            else:
                self._enqueue_control(self._client_out, _Close(WS_CLOSE_NORMAL))
            self._schedule_summary()
            self._enqueue_control(self._upstream_out, _Close(WS_CLOSE_NORMAL))
            return

        if ending is Ending.UPSTREAM_FAILED:
            self._set_state(SessionState.FAILED)
            self._enqueue_client_error(self._failure or "Realtime service connection error")
        self._enqueue_control(self._client_out, _Close(WS_CLOSE_UPSTREAM_CLOSED, "Upstream connection closed"))
        self._enqueue_control(self._upstream_out, _Close(WS_CLOSE_NORMAL))

    async def _finish_writers(self, writers: List[asyncio.Task]):
        done, pending = await asyncio.wait(writers, timeout=WRITER_DRAIN_TIMEOUT_SEC)
        for task in done:
            if task.exception() is not None:
                logger.error("[%s] Writer failed", self.session_id, exc_info=task.exception())
        for task in pending:
            logger.warning("[%s] Writer did not drain in time; cancelling", self.session_id)
            task.cancel()
        if pending:
            await asyncio.wait(pending)

    def _set_state(self, state: SessionState):
        if self.state != state:
            logger.debug("[%s] %s -> %s", self.session_id, self.state.value, state.value)
            self.state = state

    # Client -> upstream

    async def _receive_client_frame(self) -> Optional[Union[str, bytes]]:
        message = await self._client_ws.receive()
        if message["type"] == "websocket.disconnect":
            return None
        if message.get("text") is not None:
            return message["text"]
        return message.get("bytes") or b""

    async def _pump_client(self) -> Ending:
        while True:
            try:
                frame = await self._receive_client_frame()
            except WebSocketDisconnect:
                frame = None
            if frame is None:
                logger.info("[%s] Client disconnected", self.session_id)
                return Ending.CLIENT_CLOSED

            try:
                event = parse_client_event(frame)
            except ProtocolParseError as e:
                logger.warning("[%s] Bad client frame: %s", self.session_id, e)
                self._failure = "Invalid message format"
                return Ending.CLIENT_FAILED
            await self._forward_client_event(event, _as_text(frame))

    async def _forward_client_event(self, event, frame: str):
        if isinstance(event, InputAudioBufferAppend):
            # Too verbose to log every chunk
            self.chunks_since_commit += 1
            self.bytes_since_commit += _b64_decoded_len(event.audio)
            await self._upstream_out.put(frame)
            return

        if isinstance(event, InputAudioBufferCommit):
            if self.bytes_since_commit == 0:
                # Nothing buffered, so nothing to answer
                logger.info("[%s] Dropping commit with empty audio buffer", self.session_id)
                return
            logger.info(
                "[%s] Client committed audio buffer (%d chunks, %d bytes); triggering response",
                self.session_id, self.chunks_since_commit, self.bytes_since_commit,
            )
            await self._upstream_out.put(frame)
            await self._upstream_out.put(json.dumps(response_create_event()))
            self._reset_audio_counters()
            return

        if isinstance(event, InputAudioBufferClear):
            self._reset_audio_counters()

        logger.info("[%s] Client event: %s", self.session_id, event.type)
        await self._upstream_out.put(frame)

    def _reset_audio_counters(self):
        self.chunks_since_commit = 0
        self.bytes_since_commit = 0

    # Upstream -> client

    async def _pump_upstream(self) -> Ending:
        try:
            async for frame in self._upstream:
                try:
                    event = parse_server_event(frame)
                except ProtocolParseError as e:
                    logger.error("[%s] Bad upstream frame: %s", self.session_id, e)
                    self._failure = "Invalid message from realtime service"
                    return Ending.UPSTREAM_FAILED
                self._observe_server_event(event)
                await self._client_out.put(_as_text(frame))
        except ConnectionClosedError as e:
            logger.error("[%s] Upstream connection error: %s", self.session_id, e)
            self._failure = "Realtime service connection error"
            return Ending.UPSTREAM_FAILED
        logger.info("[%s] Upstream connection closed", self.session_id)
        return Ending.UPSTREAM_CLOSED

    def _observe_server_event(self, event):
        """Bookkeeping only; the frame itself is forwarded untouched."""
        if isinstance(event, (AudioTranscriptDelta, TextDelta)):
            if event.delta:
                self.transcript.append(event.delta)
        elif isinstance(event, AudioTranscriptDone):
            logger.info("[%s] AI response: %s", self.session_id, event.transcript)
        elif isinstance(event, ErrorEvent):
            logger.error("[%s] Upstream error: %s", self.session_id, event.error.message)
        elif isinstance(event, (SessionCreated, SessionUpdated)):
            logger.info("[%s] %s", self.session_id, event.type)
        elif isinstance(event, SpeechStarted):
            logger.info("[%s] User started speaking", self.session_id)
        elif isinstance(event, SpeechStopped):
            logger.info("[%s] User stopped speaking", self.session_id)

    # Writers

    async def _drain(self, queue: "asyncio.Queue[Outgoing]", send, close):
        while True:
            item = await queue.get()
            if isinstance(item, _Close):
                await close(item)
                return
            await send(item)

    async def _send_client(self, text: str):
        if self._client_ws.client_state != WebSocketState.CONNECTED:
            logger.warning("[%s] Cannot send to client - connection not open", self.session_id)
            return
        try:
            await self._client_ws.send_text(text)
        except (WebSocketDisconnect, RuntimeError) as e:
            logger.warning("[%s] Send to client failed: %s", self.session_id, e)

    async def _close_client(self, close: _Close):
        if (self._client_ws.client_state != WebSocketState.CONNECTED
                or self._client_ws.application_state != WebSocketState.CONNECTED):
            return
        try:
            await self._client_ws.close(code=close.code, reason=close.reason)
        except RuntimeError as e:
            logger.debug("[%s] Client close failed: %s", self.session_id, e)

    async def _send_upstream(self, text: str):
        try:
            await self._upstream.send(text)
        except ConnectionClosed:
            logger.warning("[%s] Cannot send to upstream - connection not open", self.session_id)

    async def _close_upstream(self, close: _Close):
        await self._upstream.close(code=close.code, reason=close.reason)

    def _enqueue_client_error(self, message: str):
        self._enqueue_control(self._client_out, json.dumps(error_event(message)))

    def _enqueue_control(self, queue: "asyncio.Queue[Outgoing]", item: Outgoing):
        """Enqueue without blocking; on a full outbox the oldest relayed frames are dropped."""
        while queue.full():
            queue.get_nowait()
            logger.warning("[%s] Outbox full; dropping a pending frame", self.session_id)
        queue.put_nowait(item)

    # Summary

    def transcript_text(self) -> str:
        return "".join(self.transcript)

    def duration_seconds(self) -> int:
        return int(time.time() - self.created_at)

    def build_summary(self) -> SessionSummary:
        return SessionSummary(
            session_id=self.session_id,
            subject_id=self.uid,
            summary_text=build_summary_text(self.transcript_text(), self._settings.SUMMARY_PREVIEW_CHARS),
            duration_seconds=self.duration_seconds(),
            jlpt_level=self.jlpt_level,
            grammar_prompt=self.grammar_prompt,
        )

    def _schedule_summary(self):
        if self._history is None:
            return
        task = asyncio.create_task(self._save_summary(self.build_summary()))
        _background_tasks.add(task)
        task.add_done_callback(_background_tasks.discard)
        self.summary_task = task

    async def _save_summary(self, summary: SessionSummary):
        try:
            await self._history.save_summary(summary)
        except Exception:
            logger.exception("[%s] Failed to save session summary", self.session_id)

    def info(self) -> Dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "userId": self.uid,
            "state": self.state.value,
            "durationSec": self.duration_seconds(),
        }
