"""
Audio conversion between recorded container files and the realtime PCM format.

The upstream realtime service speaks 16-bit signed little-endian PCM, mono,
24 kHz, sent as base64 slices of 4096 bytes. Recordings arrive as m4a/ogg/wav
files at whatever rate and channel count the device used.
"""
import base64
import logging
import os
import struct
from typing import Iterable, List, Sequence, Tuple

import numpy as np
from pydub import AudioSegment
from pydub.exceptions import CouldntDecodeError

from voice_relay.core.errors import ConversionError

logger = logging.getLogger(__name__)

TARGET_SAMPLE_RATE = 24000
TARGET_CHANNELS = 1
CHUNK_SIZE = 4096


def split_into_chunks(data: bytes, chunk_size: int = CHUNK_SIZE) -> List[bytes]:
    """Split a buffer into fixed-size slices; only the last one may be shorter."""
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    return [bytes(data[i:i + chunk_size]) for i in range(0, len(data), chunk_size)]


def downmix_to_mono(frames: np.ndarray) -> np.ndarray:
    """Average channels of a (samples, channels) float array."""
    if frames.ndim == 1:
        return frames.astype(np.float32, copy=False)
    if frames.shape[1] == 1:
        return frames[:, 0].astype(np.float32, copy=False)
    return frames.mean(axis=1, dtype=np.float64).astype(np.float32)


def resample_linear(samples: np.ndarray, src_rate: int, dst_rate: int) -> np.ndarray:
    """
    Resample a mono float signal with linear interpolation.

    Output sample i is read at source position i * src_rate / dst_rate,
    interpolated between the two bracketing source samples.
    """
    if src_rate <= 0 or dst_rate <= 0:
        raise ValueError("sample rates must be positive")
    n = len(samples)
    if src_rate == dst_rate or n == 0:
        return samples.astype(np.float32, copy=False)

    ratio = src_rate / dst_rate
    new_length = int(round(n / ratio))
    if new_length == 0:
        return np.zeros(0, dtype=np.float32)

    positions = np.arange(new_length, dtype=np.float64) * ratio
    lower = np.minimum(np.floor(positions).astype(np.int64), n - 1)
    upper = np.minimum(lower + 1, n - 1)
    fraction = positions - lower

    src = samples.astype(np.float64, copy=False)
    out = src[lower] * (1.0 - fraction) + src[upper] * fraction
    return out.astype(np.float32)


def float_to_pcm16(samples: np.ndarray) -> bytes:
    """Clamp to [-1, 1], scale (negatives by 32768, others by 32767), truncate, serialize LE."""
    clamped = np.clip(samples.astype(np.float64, copy=False), -1.0, 1.0)
    scaled = np.where(clamped < 0, clamped * 32768.0, clamped * 32767.0)
    # astype truncates toward zero
    return scaled.astype("<i2").tobytes()


def decode_container(path: str) -> Tuple[np.ndarray, int]:
    """
    Decode an audio file into float samples shaped (samples, channels) plus its rate.
    WAV is read natively by pydub; everything else goes through ffmpeg.
    """
    try:
        segment = AudioSegment.from_file(path)
    except CouldntDecodeError as e:
        raise ConversionError(f"Could not decode audio: {e}") from e
    except (OSError, ValueError, IndexError, KeyError) as e:
        raise ConversionError(f"Could not read audio: {e}") from e

    raw = np.array(segment.get_array_of_samples())
    channels = segment.channels
    full_scale = float(1 << (8 * segment.sample_width - 1))
    frames = raw.astype(np.float32) / full_scale
    if channels > 1:
        frames = frames.reshape(-1, channels)
    return frames, segment.frame_rate


def container_to_pcm(
        path: str,
        target_rate: int = TARGET_SAMPLE_RATE,
) -> bytes:
    """Decode, downmix and resample a container file to mono PCM16 at target_rate."""
    if os.path.getsize(path) == 0:
        return b""

    frames, src_rate = decode_container(path)
    mono = downmix_to_mono(frames)
    try:
        resampled = resample_linear(mono, src_rate, target_rate)
    except ValueError as e:
        raise ConversionError(str(e)) from e
    logger.debug(
        "Decoded %s: %d samples @ %d Hz -> %d samples @ %d Hz",
        path, len(mono), src_rate, len(resampled), target_rate,
    )
    return float_to_pcm16(resampled)


def container_to_pcm_chunks(
        path: str,
        target_rate: int = TARGET_SAMPLE_RATE,
        chunk_size: int = CHUNK_SIZE,
) -> List[bytes]:
    """Convert a recorded file into ordered PCM16 chunks. Empty input gives no chunks."""
    return split_into_chunks(container_to_pcm(path, target_rate), chunk_size)


def add_wav_header(
        pcm: bytes,
        sample_rate: int = TARGET_SAMPLE_RATE,
        channels: int = TARGET_CHANNELS,
) -> bytes:
    """Prefix raw PCM16 with a canonical 44-byte RIFF/WAVE header."""
    data_size = len(pcm)
    header = struct.pack(
        "<4sI4s4sIHHIIHH4sI",
        b"RIFF",
        36 + data_size,
        b"WAVE",
        b"fmt ",
        16,
        1,
        channels,
        sample_rate,
        sample_rate * channels * 2,
        channels * 2,
        16,
        b"data",
        data_size,
    )
    return header + bytes(pcm)


def pcm_chunks_to_wav(
        chunks: Sequence[bytes],
        sample_rate: int = TARGET_SAMPLE_RATE,
        channels: int = TARGET_CHANNELS,
) -> bytes:
    """
    Join PCM16 chunks into one playable WAV buffer.
    No PCM bytes at all (no chunks, or only empty ones) yields b"".
    """
    pcm = b"".join(chunks)
    if not pcm:
        return b""
    return add_wav_header(pcm, sample_rate, channels)


def encode_chunks_b64(chunks: Iterable[bytes]) -> List[str]:
    return [base64.b64encode(c).decode("ascii") for c in chunks]


def decode_chunks_b64(chunks: Iterable[str]) -> List[bytes]:
    return [base64.b64decode(c) for c in chunks]
