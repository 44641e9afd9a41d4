from pathlib import Path
from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Firebase
    FIREBASE_CREDENTIALS_FILE: str = Field(
        default="secrets/firebase-adminsdk.json",
        description="Path to Firebase Admin SDK service account JSON",
    )
    FIREBASE_DATABASE_URL: str = Field(
        default="",
        description="Firebase Realtime Database URL (session history)",
    )

    # Upstream realtime service; the key is never handed to clients
    OPENAI_API_KEY: str = Field(default="")
    OPENAI_REALTIME_URL: str = Field(default="wss://api.openai.com/v1/realtime")
    OPENAI_REALTIME_MODEL: str = Field(default="gpt-4o-realtime-preview-2024-12-17")
    UPSTREAM_CONNECT_TIMEOUT_SEC: float = Field(default=10.0)

    # Session configuration sent upstream
    REALTIME_VOICE: str = Field(default="coral")
    REALTIME_TEMPERATURE: float = Field(default=0.7)
    TRANSCRIPTION_MODEL: str = Field(default="whisper-1")
    TARGET_LANGUAGE: str = Field(default="Japanese")
    PERSONA_NAME: str = Field(default="Tanuki Chan (たぬきちゃん)")

    # PCM convention shared by the converter and the upstream session
    TARGET_SAMPLE_RATE: int = Field(default=24000)
    TARGET_CHANNELS: int = Field(default=1)
    PCM_CHUNK_SIZE: int = Field(default=4096)

    # Conversion endpoint
    MAX_UPLOAD_BYTES: int = Field(default=10 * 1024 * 1024)
    REQUIRE_AUTH_FOR_CONVERSION: bool = Field(default=False)

    # Storage for temp audio files
    TEMP_DIR: str = Field(default="/tmp/voice_relay")

    SUMMARY_PREVIEW_CHARS: int = Field(default=200)

    # Frames buffered per direction before a reader waits on its writer
    OUTBOX_MAX_FRAMES: int = Field(default=256)

    LOG_LEVEL: str = Field(default="INFO")
    LOG_FORMAT: str = Field(default="%(asctime)s %(levelname)s [%(name)s] %(message)s")

    CORS_ALLOW_ORIGINS: List[str] = Field(default=["*"])

    class Config:
        env_file = ".env"


settings = Settings()

# Ensure temp directory exists
Path(settings.TEMP_DIR).mkdir(parents=True, exist_ok=True)
