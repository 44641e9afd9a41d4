import asyncio
import base64

import pytest
from websockets.exceptions import ConnectionClosedError

from conftest import FakeClientWebSocket, FakeConnector, FakeHistory, FakeUpstream, wait_until
from voice_relay.core.errors import (
    UpstreamConnectError,
    WS_CLOSE_INTERNAL_ERROR,
    WS_CLOSE_INVALID_DATA,
    WS_CLOSE_NORMAL,
    WS_CLOSE_UPSTREAM_CLOSED,
)
from voice_relay.core.config import Settings
from voice_relay.services.relay_session import RelaySession, SessionState


def _append(n_bytes: int) -> dict:
    return {"type": "input_audio_buffer.append", "audio": base64.b64encode(b"\x01" * n_bytes).decode()}


COMMIT = {"type": "input_audio_buffer.commit"}
CLEAR = {"type": "input_audio_buffer.clear"}


def _make_session(auth, upstream=None, history=None, error=None):
    client = FakeClientWebSocket()
    upstream = upstream or FakeUpstream()
    connector = FakeConnector(upstream, error=error)
    session = RelaySession(client, auth, connector=connector, history=history or FakeHistory())
    return client, upstream, connector, session


@pytest.mark.asyncio
async def test_session_sends_configuration_first(auth) -> None:
    client, upstream, _, session = _make_session(auth)
    task = asyncio.create_task(session.run())

    await wait_until(lambda: len(upstream.sent) == 1)
    assert session.state == SessionState.ACTIVE
    config = upstream.sent[0]
    assert config["type"] == "session.update"
    assert config["session"]["modalities"] == ["text", "audio"]
    assert config["session"]["turn_detection"] is None
    assert config["session"]["input_audio_format"] == "pcm16"
    assert config["session"]["output_audio_format"] == "pcm16"
    assert config["session"]["input_audio_transcription"] == {"model": "whisper-1"}
    assert "JLPT N4" in config["session"]["instructions"]
    assert "てもいい" in config["session"]["instructions"]

    client.disconnect()
    await asyncio.wait_for(task, timeout=1.0)
    assert session.state == SessionState.CLOSED


@pytest.mark.asyncio
async def test_appends_commit_then_synthetic_response_in_order(auth) -> None:
    client, upstream, _, session = _make_session(auth)
    task = asyncio.create_task(session.run())

    client.push(_append(4096))
    client.push(_append(2000))
    client.push(COMMIT)
    client.disconnect()
    await asyncio.wait_for(task, timeout=1.0)

    assert upstream.sent_types()[1:] == [
        "input_audio_buffer.append",
        "input_audio_buffer.append",
        "input_audio_buffer.commit",
        "response.create",
    ]
    assert upstream.sent[1] == _append(4096)
    assert session.chunks_since_commit == 0
    assert upstream.close_code == WS_CLOSE_NORMAL


@pytest.mark.asyncio
async def test_commit_without_append_is_dropped(auth) -> None:
    client, upstream, _, session = _make_session(auth)
    task = asyncio.create_task(session.run())

    client.push(COMMIT)
    client.push(_append(100))
    client.push(COMMIT)
    client.push(COMMIT)
    client.disconnect()
    await asyncio.wait_for(task, timeout=1.0)

    assert upstream.sent_types()[1:] == [
        "input_audio_buffer.append",
        "input_audio_buffer.commit",
        "response.create",
    ]
    # Dropped commits are not errors
    assert client.sent == []


@pytest.mark.asyncio
async def test_commit_after_empty_append_is_dropped(auth) -> None:
    client, upstream, _, session = _make_session(auth)
    task = asyncio.create_task(session.run())

    client.push({"type": "input_audio_buffer.append", "audio": ""})
    client.push(COMMIT)
    client.disconnect()
    await asyncio.wait_for(task, timeout=1.0)

    # The empty append still reaches upstream; the zero-byte commit does not
    assert upstream.sent_types()[1:] == ["input_audio_buffer.append"]
    assert client.sent == []


@pytest.mark.asyncio
async def test_client_event_with_unexpected_shape_is_forwarded(auth) -> None:
    client, upstream, _, session = _make_session(auth)
    task = asyncio.create_task(session.run())

    odd = [
        {"type": "session.update", "session": None},
        {"type": "input_audio_buffer.append"},
    ]
    for event in odd:
        client.push(event)
    client.push(COMMIT)
    await wait_until(lambda: len(upstream.sent) == 3)
    assert session.state == SessionState.ACTIVE
    assert session.chunks_since_commit == 0

    client.disconnect()
    await asyncio.wait_for(task, timeout=1.0)

    # Forwarded verbatim; the append without audio did not open the commit gate
    assert upstream.sent[1:] == odd
    assert client.sent == []
    assert client.close_code is None
    assert session.state == SessionState.CLOSED

@pytest.mark.asyncio
async def test_clear_resets_pending_audio(auth) -> None:
    client, upstream, _, session = _make_session(auth)
    task = asyncio.create_task(session.run())

    client.push(_append(10))
    client.push(CLEAR)
    client.push(COMMIT)
    client.push({"type": "response.cancel"})
    client.disconnect()
    await asyncio.wait_for(task, timeout=1.0)

    assert upstream.sent_types()[1:] == [
        "input_audio_buffer.append",
        "input_audio_buffer.clear",
        "response.cancel",
    ]


@pytest.mark.asyncio
async def test_audio_byte_count_tracked_until_commit(auth) -> None:
    client, upstream, _, session = _make_session(auth)
    task = asyncio.create_task(session.run())

    client.push(_append(4096))
    client.push(_append(2000))
    await wait_until(lambda: len(upstream.sent) == 3)
    assert session.chunks_since_commit == 2
    assert session.bytes_since_commit == 6096

    client.disconnect()
    await asyncio.wait_for(task, timeout=1.0)


@pytest.mark.asyncio
async def test_unknown_client_event_forwarded_verbatim(auth) -> None:
    client, upstream, _, session = _make_session(auth)
    task = asyncio.create_task(session.run())

    event = {"type": "conversation.item.create", "item": {"type": "message", "role": "user"}}
    client.push(event)
    client.disconnect()
    await asyncio.wait_for(task, timeout=1.0)

    assert upstream.sent[1] == event


@pytest.mark.asyncio
async def test_upstream_events_forwarded_and_transcript_collected(auth) -> None:
    client, upstream, _, session = _make_session(auth)
    task = asyncio.create_task(session.run())

    events = [
        {"type": "session.updated", "session": {"voice": "coral"}},
        {"type": "response.audio.delta", "delta": "AAAA", "response_id": "r1"},
        {"type": "response.audio_transcript.delta", "delta": "こんにちは", "response_id": "r1"},
        {"type": "response.audio_transcript.delta", "delta": "。", "response_id": "r1"},
        {"type": "response.audio_transcript.done", "transcript": "こんにちは。"},
        {"type": "some.future.event", "x": 1},
        {"type": "error", "error": {"type": "invalid_request_error", "message": "nope"}},
    ]
    for event in events:
        upstream.push(event)

    await wait_until(lambda: len(client.sent) == len(events))
    assert client.sent == events
    assert session.transcript == ["こんにちは", "。"]

    client.disconnect()
    await asyncio.wait_for(task, timeout=1.0)


@pytest.mark.asyncio
async def test_client_close_saves_summary_and_closes_upstream(auth) -> None:
    history = FakeHistory()
    client, upstream, _, session = _make_session(auth, history=history)
    task = asyncio.create_task(session.run())

    upstream.push({"type": "response.audio_transcript.delta", "delta": "いいですね。"})
    await wait_until(lambda: len(client.sent) == 1)
    client.disconnect()
    await asyncio.wait_for(task, timeout=1.0)
    await asyncio.wait_for(session.summary_task, timeout=1.0)

    assert upstream.close_code == WS_CLOSE_NORMAL
    assert len(history.saved) == 1
    summary = history.saved[0]
    assert summary.session_id == session.session_id
    assert summary.subject_id == "user-1"
    assert summary.to_payload()["mode"] == "realtime"
    assert summary.summary_text == "いいですね。 (1 sentences)"


@pytest.mark.asyncio
async def test_summary_failure_does_not_break_teardown(auth) -> None:
    history = FakeHistory(error=RuntimeError("firebase down"))
    client, upstream, _, session = _make_session(auth, history=history)
    task = asyncio.create_task(session.run())

    await wait_until(lambda: session.state == SessionState.ACTIVE)
    client.disconnect()
    await asyncio.wait_for(task, timeout=1.0)
    await asyncio.wait_for(session.summary_task, timeout=1.0)

    assert session.state == SessionState.CLOSED
    assert upstream.close_code == WS_CLOSE_NORMAL
    assert client.sent == []


@pytest.mark.asyncio
async def test_upstream_close_closes_client_without_summary(auth) -> None:
    history = FakeHistory()
    client, upstream, _, session = _make_session(auth, history=history)
    task = asyncio.create_task(session.run())

    upstream.finish()
    await asyncio.wait_for(task, timeout=1.0)

    assert client.close_code == WS_CLOSE_UPSTREAM_CLOSED
    assert session.summary_task is None
    assert history.saved == []
    assert session.state == SessionState.CLOSED


@pytest.mark.asyncio
async def test_upstream_error_sends_one_error_then_closes(auth) -> None:
    client, upstream, _, session = _make_session(auth)
    task = asyncio.create_task(session.run())

    upstream.fail(ConnectionClosedError(None, None))
    await asyncio.wait_for(task, timeout=1.0)

    assert [e["type"] for e in client.sent] == ["error"]
    assert client.close_code == WS_CLOSE_UPSTREAM_CLOSED
    assert session.state == SessionState.FAILED


@pytest.mark.asyncio
async def test_upstream_connect_failure(auth) -> None:
    client, upstream, connector, session = _make_session(
        auth, error=UpstreamConnectError("unreachable"),
    )
    await asyncio.wait_for(session.run(), timeout=1.0)

    assert connector.attempts == 1
    assert len(client.sent) == 1
    assert client.sent[0]["type"] == "error"
    assert client.sent[0]["error"]["type"] == "server_error"
    assert client.close_code == WS_CLOSE_INTERNAL_ERROR
    assert upstream.sent == []
    assert session.state == SessionState.FAILED


@pytest.mark.asyncio
async def test_malformed_client_frame_fails_session(auth) -> None:
    history = FakeHistory()
    client, upstream, _, session = _make_session(auth, history=history)
    task = asyncio.create_task(session.run())

    client.push_raw("not json")
    await asyncio.wait_for(task, timeout=1.0)

    assert [e["type"] for e in client.sent] == ["error"]
    assert client.close_code == WS_CLOSE_INVALID_DATA
    assert upstream.close_code == WS_CLOSE_NORMAL
    assert upstream.sent_types() == ["session.update"]
    assert session.state == SessionState.FAILED


@pytest.mark.asyncio
async def test_malformed_upstream_frame_fails_session(auth) -> None:
    client, upstream, _, session = _make_session(auth)
    task = asyncio.create_task(session.run())

    upstream.push_raw("[1, 2, 3]")
    await asyncio.wait_for(task, timeout=1.0)

    assert [e["type"] for e in client.sent] == ["error"]
    assert client.close_code == WS_CLOSE_UPSTREAM_CLOSED
    assert session.state == SessionState.FAILED


def test_info_reports_identity(auth) -> None:
    _, _, _, session = _make_session(auth)
    info = session.info()
    assert info["sessionId"].startswith("rt_")
    assert info["userId"] == "user-1"
    assert info["state"] == "connecting"


class SlowClientWebSocket(FakeClientWebSocket):
    def __init__(self) -> None:
        super().__init__()
        self.gate = asyncio.Event()

    async def send_text(self, text: str) -> None:
        await self.gate.wait()
        await super().send_text(text)


@pytest.mark.asyncio
async def test_slow_client_applies_backpressure_to_upstream_reader(auth) -> None:
    client = SlowClientWebSocket()
    upstream = FakeUpstream()
    session = RelaySession(
        client, auth,
        connector=FakeConnector(upstream),
        history=FakeHistory(),
        settings=Settings(OUTBOX_MAX_FRAMES=2),
    )
    task = asyncio.create_task(session.run())

    events = [{"type": "response.audio.delta", "delta": "AAAA", "n": i} for i in range(10)]
    for event in events:
        upstream.push(event)

    await wait_until(lambda: session._client_out.full())
    await asyncio.sleep(0.05)
    # Reader stopped pulling from upstream instead of buffering everything
    assert session._client_out.qsize() == 2
    assert upstream.incoming.qsize() > 0

    client.gate.set()
    await wait_until(lambda: len(client.sent) == len(events))
    assert client.sent == events

    client.disconnect()
    await asyncio.wait_for(task, timeout=1.0)
    assert upstream.close_code == WS_CLOSE_NORMAL


def test_control_frames_evict_oldest_when_outbox_full(auth) -> None:
    session = RelaySession(
        FakeClientWebSocket(), auth,
        connector=FakeConnector(FakeUpstream()),
        settings=Settings(OUTBOX_MAX_FRAMES=2),
    )
    session._client_out.put_nowait("a")
    session._client_out.put_nowait("b")

    session._enqueue_client_error("boom")

    assert session._client_out.qsize() == 2
    assert session._client_out.get_nowait() == "b"
    assert '"boom"' in session._client_out.get_nowait()
