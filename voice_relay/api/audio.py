import asyncio
import logging
import os
import uuid
from pathlib import Path
from typing import Optional

from fastapi import APIRouter, Depends, File, UploadFile
from fastapi.responses import JSONResponse

from voice_relay.core.config import settings
from voice_relay.core.errors import ConversionError
from voice_relay.services.audio_converter import container_to_pcm, encode_chunks_b64, split_into_chunks
from voice_relay.services.ws_auth import get_current_uid

logger = logging.getLogger(__name__)

router = APIRouter()

UPLOAD_READ_SIZE = 64 * 1024


def _temp_path(filename: Optional[str]) -> Path:
    # Keep the extension so pydub can pick the right decoder
    suffix = Path(filename or "").suffix.lower() or ".m4a"
    return Path(settings.TEMP_DIR) / f"upload_{uuid.uuid4().hex[:8]}{suffix}"


async def _save_upload(audio: UploadFile, path: Path) -> Optional[int]:
    """Write the upload to disk; returns its size, or None if it exceeds the limit."""
    size = 0
    with open(path, "wb") as f:
        while True:
            block = await audio.read(UPLOAD_READ_SIZE)
            if not block:
                return size
            size += len(block)
            if size > settings.MAX_UPLOAD_BYTES:
                return None
            f.write(block)


@router.post("/api/audio/convert-to-pcm16")
async def convert_to_pcm16(
        audio: Optional[UploadFile] = File(None),
        uid: Optional[str] = Depends(get_current_uid),
):
    """
    Convert an uploaded recording (m4a/ogg/wav/...) into 24 kHz mono PCM16
    chunks for clients that cannot decode containers locally.
    """
    if audio is None:
        return JSONResponse(status_code=400, content={
            "error": "No audio file provided",
            "message": 'Please upload an audio file in the "audio" field',
        })

    path = _temp_path(audio.filename)
    try:
        size = await _save_upload(audio, path)
        if size is None:
            return JSONResponse(status_code=413, content={
                "error": "Audio file too large",
                "message": f"Maximum upload size is {settings.MAX_UPLOAD_BYTES} bytes",
            })
        logger.info("Converting %s (%d bytes) uid=%s", audio.filename, size, uid)

        pcm = await asyncio.get_running_loop().run_in_executor(
            None,
            lambda: container_to_pcm(str(path), settings.TARGET_SAMPLE_RATE),
        )
    except ConversionError as e:
        logger.error("Audio conversion failed for %s: %s", audio.filename, e)
        return JSONResponse(status_code=500, content={
            "error": "Audio conversion failed",
            "message": str(e),
        })
    finally:
        if path.exists():
            os.unlink(path)

    chunks = split_into_chunks(pcm, settings.PCM_CHUNK_SIZE)
    logger.info("Converted %s: %d bytes in %d chunks", audio.filename, len(pcm), len(chunks))
    return {
        "success": True,
        "chunks": encode_chunks_b64(chunks),
        "totalSize": len(pcm),
        "chunkCount": len(chunks),
    }
