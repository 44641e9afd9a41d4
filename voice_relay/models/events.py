"""
Realtime event vocabularies.

Both directions are closed sets of known types plus an explicit fallback
(`UnknownEvent`) so that types the relay does not handle are still
forwarded. The relay always forwards the original frame text; these models
are only used to drive its own bookkeeping.
"""
import json
from typing import Any, Dict, Literal, Optional, Type, Union

from pydantic import BaseModel, ConfigDict, ValidationError

from voice_relay.core.errors import ProtocolParseError


class RealtimeEvent(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: str
    event_id: Optional[str] = None


class UnknownEvent(RealtimeEvent):
    pass


# Client → relay

class SessionUpdate(RealtimeEvent):
    type: Literal["session.update"] = "session.update"
    session: Dict[str, Any] = {}


class InputAudioBufferAppend(RealtimeEvent):
    type: Literal["input_audio_buffer.append"] = "input_audio_buffer.append"
    audio: str  # base64 PCM16


class InputAudioBufferCommit(RealtimeEvent):
    type: Literal["input_audio_buffer.commit"] = "input_audio_buffer.commit"


class InputAudioBufferClear(RealtimeEvent):
    type: Literal["input_audio_buffer.clear"] = "input_audio_buffer.clear"


class ResponseCreate(RealtimeEvent):
    type: Literal["response.create"] = "response.create"
    response: Optional[Dict[str, Any]] = None


class ResponseCancel(RealtimeEvent):
    type: Literal["response.cancel"] = "response.cancel"


ClientEvent = Union[
    SessionUpdate,
    InputAudioBufferAppend,
    InputAudioBufferCommit,
    InputAudioBufferClear,
    ResponseCreate,
    ResponseCancel,
    UnknownEvent,
]


# Upstream → relay → client

class ErrorDetail(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: str = "server_error"
    code: Optional[str] = None
    message: str = ""
    param: Optional[str] = None
    event_id: Optional[str] = None


class ErrorEvent(RealtimeEvent):
    type: Literal["error"] = "error"
    error: ErrorDetail = ErrorDetail()


class SessionCreated(RealtimeEvent):
    type: Literal["session.created"] = "session.created"


class SessionUpdated(RealtimeEvent):
    type: Literal["session.updated"] = "session.updated"


class SpeechStarted(RealtimeEvent):
    type: Literal["input_audio_buffer.speech_started"] = "input_audio_buffer.speech_started"
    audio_start_ms: Optional[int] = None
    item_id: Optional[str] = None


class SpeechStopped(RealtimeEvent):
    type: Literal["input_audio_buffer.speech_stopped"] = "input_audio_buffer.speech_stopped"
    audio_end_ms: Optional[int] = None
    item_id: Optional[str] = None


class ResponseCreated(RealtimeEvent):
    type: Literal["response.created"] = "response.created"


class ResponseDone(RealtimeEvent):
    type: Literal["response.done"] = "response.done"


class AudioDelta(RealtimeEvent):
    type: Literal["response.audio.delta"] = "response.audio.delta"
    delta: str = ""  # base64 PCM16


class AudioDone(RealtimeEvent):
    type: Literal["response.audio.done"] = "response.audio.done"


class AudioTranscriptDelta(RealtimeEvent):
    type: Literal["response.audio_transcript.delta"] = "response.audio_transcript.delta"
    delta: str = ""


class AudioTranscriptDone(RealtimeEvent):
    type: Literal["response.audio_transcript.done"] = "response.audio_transcript.done"
    transcript: str = ""


class TextDelta(RealtimeEvent):
    type: Literal["response.text.delta"] = "response.text.delta"
    delta: str = ""


class TextDone(RealtimeEvent):
    type: Literal["response.text.done"] = "response.text.done"
    text: str = ""


class RateLimitsUpdated(RealtimeEvent):
    type: Literal["rate_limits.updated"] = "rate_limits.updated"


ServerEvent = Union[
    ErrorEvent,
    SessionCreated,
    SessionUpdated,
    SpeechStarted,
    SpeechStopped,
    ResponseCreated,
    ResponseDone,
    AudioDelta,
    AudioDone,
    AudioTranscriptDelta,
    AudioTranscriptDone,
    TextDelta,
    TextDone,
    RateLimitsUpdated,
    UnknownEvent,
]


def _registry(*models: Type[RealtimeEvent]) -> Dict[str, Type[RealtimeEvent]]:
    return {m.model_fields["type"].default: m for m in models}


CLIENT_EVENTS = _registry(
    SessionUpdate,
    InputAudioBufferAppend,
    InputAudioBufferCommit,
    InputAudioBufferClear,
    ResponseCreate,
    ResponseCancel,
)

SERVER_EVENTS = _registry(
    ErrorEvent,
    SessionCreated,
    SessionUpdated,
    SpeechStarted,
    SpeechStopped,
    ResponseCreated,
    ResponseDone,
    AudioDelta,
    AudioDone,
    AudioTranscriptDelta,
    AudioTranscriptDone,
    TextDelta,
    TextDone,
    RateLimitsUpdated,
)


def _parse(
        raw: Union[str, bytes],
        registry: Dict[str, Type[RealtimeEvent]],
        source: str,
) -> RealtimeEvent:
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise ProtocolParseError(f"invalid JSON: {e}", source) from e

    if not isinstance(data, dict):
        raise ProtocolParseError("event must be a JSON object", source)
    event_type = data.get("type")
    if not isinstance(event_type, str) or not event_type:
        raise ProtocolParseError("event missing non-empty 'type'", source)

    model = registry.get(event_type, UnknownEvent)
    try:
        return model.model_validate(data)
    except ValidationError:
        # Known type with an unexpected shape is forwarded as-is
        return UnknownEvent.model_validate(data)


def parse_client_event(raw: Union[str, bytes]) -> ClientEvent:
    return _parse(raw, CLIENT_EVENTS, "client")


def parse_server_event(raw: Union[str, bytes]) -> ServerEvent:
    return _parse(raw, SERVER_EVENTS, "upstream")


def error_event(message: str, error_type: str = "server_error") -> Dict[str, Any]:
    """Relay-originated error in the same shape the upstream service uses."""
    return {"type": "error", "error": {"type": error_type, "message": message}}


def response_create_event() -> Dict[str, Any]:
    return {"type": ResponseCreate.model_fields["type"].default}


def session_update_event(session: Dict[str, Any]) -> Dict[str, Any]:
    return {"type": SessionUpdate.model_fields["type"].default, "session": session}

