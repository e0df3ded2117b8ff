"""WAV container encoding for the speech engine.

The speech engine only accepts file input in a RIFF/WAVE container, while
callers hand over audio in whatever shape their capture layer produced
(hex strings from the UI bridge, numpy arrays, raw byte buffers). Everything
is normalized to bytes first and then wrapped in the canonical 44-byte PCM
header unless it already carries one.
"""

import logging
import struct
from typing import Any, Optional, Tuple

import numpy as np

from .errors import AudioFormatError, EmptyAudioError

logger = logging.getLogger(__name__)

NUM_CHANNELS = 1
BITS_PER_SAMPLE = 16
PCM_FORMAT = 1
HEADER_SIZE = 44
FMT_CHUNK_SIZE = 16

RIFF_SIGNATURE = b"RIFF"
WAVE_SIGNATURE = b"WAVE"

# Little-endian header layout: RIFF chunk, fmt sub-chunk, data sub-chunk
_HEADER_STRUCT = struct.Struct("<4sI4s4sIHHIIHH4sI")

# Conversion factor for float32 [-1.0, 1.0] to s16
FLOAT32_TO_INT16 = 32767.0


def _array_to_bytes(audio: np.ndarray) -> bytes:
    """Convert a numpy array into raw PCM bytes."""
    audio = np.ascontiguousarray(audio).ravel()

    if audio.dtype.kind == "f":
        # Floating point samples are assumed to be normalized to [-1, 1]
        scaled = np.clip(audio, -1.0, 1.0) * FLOAT32_TO_INT16
        return scaled.astype("<i2").tobytes()

    if audio.dtype.kind in "iu":
        if audio.dtype.itemsize == 2:
            return audio.astype(audio.dtype.newbyteorder("<")).tobytes()
        # Any other integer width is treated as a plain view over the bytes
        return audio.tobytes()

    raise AudioFormatError(f"Unsupported audio array dtype: {audio.dtype}")


def normalize_audio(raw_audio: Any) -> bytes:
    """Normalize caller-supplied audio to a single bytes object.

    Args:
        raw_audio: Hex-encoded string, numpy array, or any object exposing
            the buffer protocol (bytes, bytearray, memoryview, array.array).

    Returns:
        The audio as bytes.

    Raises:
        AudioFormatError: If the input type is unsupported or the hex is malformed.
    """
    if isinstance(raw_audio, str):
        try:
            return bytes.fromhex(raw_audio.strip())
        except ValueError as e:
            raise AudioFormatError(f"Invalid hex-encoded audio: {e}") from e

    if isinstance(raw_audio, np.ndarray):
        return _array_to_bytes(raw_audio)

    if isinstance(raw_audio, (bytes, bytearray)):
        return bytes(raw_audio)

    try:
        return memoryview(raw_audio).tobytes()
    except TypeError as e:
        raise AudioFormatError(
            f"Unsupported audio type: {type(raw_audio).__name__}"
        ) from e


def build_wav_header(data_size: int, sample_rate: int) -> bytes:
    """Build the 44-byte PCM header for a mono 16-bit payload."""
    byte_rate = sample_rate * NUM_CHANNELS * BITS_PER_SAMPLE // 8
    block_align = NUM_CHANNELS * BITS_PER_SAMPLE // 8

    return _HEADER_STRUCT.pack(
        RIFF_SIGNATURE,
        36 + data_size,
        WAVE_SIGNATURE,
        b"fmt ",
        FMT_CHUNK_SIZE,
        PCM_FORMAT,
        NUM_CHANNELS,
        sample_rate,
        byte_rate,
        block_align,
        BITS_PER_SAMPLE,
        b"data",
        data_size,
    )


def encode_wav(raw_audio: Any, sample_rate: int = 16000) -> bytes:
    """Wrap raw 16-bit little-endian mono PCM in a WAV container.

    Buffers that already start with the RIFF signature are returned
    unchanged, so encoding is idempotent.

    Args:
        raw_audio: Audio in any representation accepted by normalize_audio.
        sample_rate: Sample rate of the PCM data in Hz.

    Returns:
        The WAV file contents.

    Raises:
        EmptyAudioError: If the normalized buffer is empty.
        AudioFormatError: If the input cannot be normalized or the sample
            rate is not positive.
    """
    buffer = normalize_audio(raw_audio)

    if not buffer:
        raise EmptyAudioError("Audio buffer is empty")

    if buffer.startswith(RIFF_SIGNATURE):
        return buffer

    if sample_rate <= 0:
        raise AudioFormatError(f"Invalid sample rate: {sample_rate}")

    # Drop a trailing odd byte so the payload holds whole 16-bit samples
    data_size = len(buffer) // 2 * 2

    return build_wav_header(data_size, sample_rate) + buffer[:data_size]


def validate_wav(buffer: bytes) -> Tuple[bool, Optional[str]]:
    """Check that a buffer looks like a WAV container.

    Returns:
        Tuple of (valid, reason)
        - valid: True if the buffer passed all checks
        - reason: Why validation failed, None otherwise
    """
    if len(buffer) < HEADER_SIZE:
        return False, f"WAV buffer is too small ({len(buffer)} bytes)"

    if buffer[:4] != RIFF_SIGNATURE:
        return False, "Missing RIFF signature"

    if buffer[8:12] != WAVE_SIGNATURE:
        return False, "Missing WAVE signature"

    return True, None


def wav_duration(buffer: bytes) -> float:
    """Duration in seconds of a WAV buffer with a canonical 44-byte header."""
    valid, reason = validate_wav(buffer)
    if not valid:
        raise AudioFormatError(reason)

    byte_rate = struct.unpack_from("<I", buffer, 28)[0]
    data_size = struct.unpack_from("<I", buffer, 40)[0]
    if byte_rate == 0:
        return 0.0
    return data_size / byte_rate
