"""
Audio ingestion (WAV in, WAV out).

The engines consume 16kHz mono float32 samples in [-1, 1]. WAV files must be
PCM 16-bit. Channel count and sample rate are validated strictly unless
`resample=True`, in which case extra channels are averaged down to mono and
the rate is converted with soxr.
"""

import io
import logging
import wave
from pathlib import Path

import numpy as np
import soxr

from transcribe.core.errors import InvalidAudio

logger = logging.getLogger(__name__)

SAMPLE_RATE = 16000  # Hz, fixed by every supported model
SAMPLE_WIDTH_BYTES = 2  # 16-bit PCM
CHANNELS = 1


def pcm16_to_float32(data: bytes) -> np.ndarray:
    """Convert little-endian PCM16 bytes to float32 normalized to [-1, 1]."""
    audio = np.frombuffer(data, dtype="<i2").astype(np.float32)
    audio /= 32768.0
    return audio


def float32_to_pcm16(audio: np.ndarray) -> bytes:
    """Convert float32 [-1, 1] samples to PCM16 bytes (values outside the range are clipped)."""
    clipped = np.clip(np.asarray(audio, dtype=np.float32), -1.0, 1.0)
    pcm = (clipped * 32767.0).astype("<i2")
    return pcm.tobytes()


def validate_samples(audio: np.ndarray) -> np.ndarray:
    """
    Check an in-memory buffer against the AudioBuffer invariant.

    Returns the buffer as a contiguous float32 array. Raises InvalidAudio for
    empty, multi-dimensional or non-finite input.
    """
    if audio is None:
        raise InvalidAudio("audio buffer is None")

    samples = np.asarray(audio)
    if samples.ndim == 2 and 1 in samples.shape:
        samples = samples.reshape(-1)
    if samples.ndim != 1:
        raise InvalidAudio(
            f"expected mono samples (1-D array), got shape {samples.shape}"
        )
    if samples.size == 0:
        raise InvalidAudio("audio buffer is empty")
    if samples.dtype == np.int16:
        samples = samples.astype(np.float32) / 32768.0
    elif not np.issubdtype(samples.dtype, np.floating):
        raise InvalidAudio(f"expected float samples in [-1, 1], got dtype {samples.dtype}")

    samples = np.ascontiguousarray(samples, dtype=np.float32)
    if not np.all(np.isfinite(samples)):
        raise InvalidAudio("audio buffer contains NaN or infinite samples")
    return samples


def read_wav(path: str | Path, resample: bool = False) -> np.ndarray:
    """
    Decode a WAV file into 16kHz mono float32 samples.

    Args:
        path: WAV file path
        resample: convert channel count and sample rate instead of rejecting them

    Raises:
        InvalidAudio: unreadable container, non-PCM16 data, wrong format (strict mode), no samples
    """
    try:
        with wave.open(str(path), "rb") as wf:
            channels = wf.getnchannels()
            sample_width = wf.getsampwidth()
            sample_rate = wf.getframerate()
            frames = wf.readframes(wf.getnframes())
    except (wave.Error, EOFError) as e:
        raise InvalidAudio(f"cannot parse WAV container {path}: {e}") from e

    if sample_width != SAMPLE_WIDTH_BYTES:
        raise InvalidAudio(
            f"expected 16-bit PCM, got {sample_width * 8}-bit samples"
        )

    if not resample:
        if channels != CHANNELS:
            raise InvalidAudio(f"expected mono audio, got {channels} channels")
        if sample_rate != SAMPLE_RATE:
            raise InvalidAudio(
                f"expected sample rate {SAMPLE_RATE} Hz, got {sample_rate} Hz"
            )

    samples = pcm16_to_float32(frames)
    if samples.size == 0:
        raise InvalidAudio("WAV file contains no samples")

    return convert_audio(samples, channels, sample_rate)


def convert_audio(samples: np.ndarray, channels: int, sample_rate: int) -> np.ndarray:
    """
    Down-mix interleaved samples to mono (channel average) and resample to 16kHz.
    """
    if channels > 1:
        usable = samples.size - samples.size % channels
        samples = samples[:usable].reshape(-1, channels).mean(axis=1).astype(np.float32)

    if sample_rate != SAMPLE_RATE:
        logger.debug(f"Resampling {sample_rate}Hz -> {SAMPLE_RATE}Hz ({samples.size} samples)")
        samples = soxr.resample(samples, sample_rate, SAMPLE_RATE, quality="VHQ").astype(np.float32)

    return samples


def encode_wav_bytes(samples: np.ndarray) -> bytes:
    """Encode float32 samples as an in-memory 16kHz mono PCM16 WAV file."""
    buffer = io.BytesIO()
    with wave.open(buffer, "wb") as wf:
        wf.setnchannels(CHANNELS)
        wf.setsampwidth(SAMPLE_WIDTH_BYTES)
        wf.setframerate(SAMPLE_RATE)
        wf.writeframes(float32_to_pcm16(samples))
    return buffer.getvalue()


def save_wav_file(path: str | Path, samples: np.ndarray) -> None:
    """Write float32 samples to disk as a 16kHz mono PCM16 WAV file."""
    Path(path).write_bytes(encode_wav_bytes(samples))
    logger.debug(f"Saved WAV file: {path}")


def duration_seconds(samples: np.ndarray) -> float:
    return len(samples) / SAMPLE_RATE
