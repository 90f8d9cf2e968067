"""
Feature extraction: audio samples -> model input tensors.

Each backend has one fixed transform:
- Parakeet: the `nemo128.onnx` preprocessor graph (STFT -> 128 mel bins -> log),
  exported together with the model so the features match its training setup.
- Moonshine: raw samples, the encoder embeds its own normalization.
- Whisper: log-mel is computed inside whisper.cpp.

Long audio is cut into fixed, non-overlapping windows by `split_windows`.
Window boundaries are hard cuts: a word spoken across a boundary can be split
between two windows. Use the VAD smart chunker to cut at silences instead.
"""

from dataclasses import dataclass

import numpy as np
import onnxruntime as ort

from transcribe.adapters.audio_io import SAMPLE_RATE
from transcribe.core.onnx_session import run_session


@dataclass(frozen=True)
class AudioWindow:
    """A slice of the input buffer and its position (in seconds) within it."""

    offset: float
    samples: np.ndarray


def split_windows(
    samples: np.ndarray,
    window_seconds: float,
    overlap_seconds: float = 0.0,
) -> list[AudioWindow]:
    """
    Cut samples into consecutive windows of at most `window_seconds`.

    `overlap_seconds` > 0 makes each window start that much before the end of
    the previous one. A window_seconds <= 0 disables splitting.
    """
    total = len(samples)
    window = int(window_seconds * SAMPLE_RATE)
    if window <= 0 or total <= window:
        return [AudioWindow(offset=0.0, samples=samples)]

    overlap = int(overlap_seconds * SAMPLE_RATE)
    if overlap >= window:
        raise ValueError("overlap must be shorter than the window")

    windows = []
    start = 0
    while start < total:
        end = min(start + window, total)
        windows.append(AudioWindow(offset=start / SAMPLE_RATE, samples=samples[start:end]))
        if end >= total:
            break
        start = end - overlap
    return windows


class NemoPreprocessor:
    """
    Log-mel front end of NeMo FastConformer models (`nemo128.onnx`).

    Input: waveform [1, N] float32 + length [1] int64.
    Output: features [1, 128, T] float32 + feature lengths [1] int64.
    """

    def __init__(self, session: ort.InferenceSession):
        self.session = session

    def __call__(self, samples: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        waveforms = samples.astype(np.float32)[None, :]
        lengths = np.array([samples.shape[0]], dtype=np.int64)
        outputs = run_session(
            self.session,
            {"waveforms": waveforms, "waveforms_lens": lengths},
            ["features", "features_lens"],
            what="preprocessor",
        )
        return outputs["features"], outputs["features_lens"]


class RawWaveformFrontend:
    """
    Raw sample front end for encoders that normalize internally (Moonshine).

    Clips shorter than `min_seconds` are zero-padded at the end.
    """

    def __init__(self, min_seconds: float = 0.1):
        self.min_samples = int(min_seconds * SAMPLE_RATE)

    def __call__(self, samples: np.ndarray) -> np.ndarray:
        audio = samples.astype(np.float32)
        if audio.shape[0] < self.min_samples:
            audio = np.pad(audio, (0, self.min_samples - audio.shape[0]))
        return audio[None, :]
