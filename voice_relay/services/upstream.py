"""Outbound connection to the upstream realtime service."""
import asyncio
import logging
from typing import Any, Dict

import websockets
from websockets.exceptions import InvalidHandshake, InvalidURI

from voice_relay.core.config import Settings, settings as default_settings
from voice_relay.core.errors import UpstreamConnectError

logger = logging.getLogger(__name__)


def build_session_config(instructions: str, settings: Settings = default_settings) -> Dict[str, Any]:
    """Payload of the session.update event sent right after connecting."""
    return {
        "modalities": ["text", "audio"],
        "instructions": instructions,
        "voice": settings.REALTIME_VOICE,
        "input_audio_format": "pcm16",
        "output_audio_format": "pcm16",
        "input_audio_transcription": {"model": settings.TRANSCRIPTION_MODEL},
        # End of turn is signalled by the client's commit, not server VAD.
        "turn_detection": None,
        "temperature": settings.REALTIME_TEMPERATURE,
    }


class UpstreamConnector:
    """Opens authenticated websocket connections to the realtime API."""

    def __init__(self, settings: Settings = default_settings):
        self._settings = settings

    @property
    def url(self) -> str:
        return f"{self._settings.OPENAI_REALTIME_URL}?model={self._settings.OPENAI_REALTIME_MODEL}"

    async def connect(self) -> websockets.ClientConnection:
        api_key = self._settings.OPENAI_API_KEY
        if not api_key:
            raise UpstreamConnectError("OPENAI_API_KEY not configured")

        logger.info("Connecting to upstream realtime API %s", self._settings.OPENAI_REALTIME_URL)
        try:
            return await websockets.connect(
                self.url,
                additional_headers={
                    "Authorization": f"Bearer {api_key}",
                    "OpenAI-Beta": "realtime=v1",
                },
                open_timeout=self._settings.UPSTREAM_CONNECT_TIMEOUT_SEC,
                max_size=None,
            )
        except (OSError, InvalidHandshake, InvalidURI, asyncio.TimeoutError) as e:
            raise UpstreamConnectError(f"Failed to connect to upstream realtime API: {e}") from e
