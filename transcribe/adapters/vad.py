"""
Silero voice activity detector (ONNX).

Frames are 30 ms (480 samples at 16kHz). The detector is stateful: the LSTM
state carries over between frames until `reset()`.
"""

import logging
from dataclasses import dataclass
from pathlib import Path

import numpy as np

from transcribe.adapters.audio_io import SAMPLE_RATE
from transcribe.core.onnx_session import create_session, run_session

logger = logging.getLogger(__name__)

FRAME_SIZE = 480  # 30ms @ 16kHz
SPEECH_THRESHOLD = 0.5
STATE_SHAPE = (2, 1, 64)


@dataclass(frozen=True)
class VadResult:
    probability: float

    @property
    def is_speech(self) -> bool:
        return self.probability > SPEECH_THRESHOLD


class SileroVad:
    def __init__(self, model_path: str | Path):
        self.model_path = Path(model_path)
        self.session = create_session(self.model_path, intra_threads=1)
        sr_type = next((i.type for i in self.session.get_inputs() if i.name == "sr"), "tensor(int64)")
        sr_dtype = np.float32 if "float" in sr_type else np.int64
        self._sr = np.array([SAMPLE_RATE], dtype=sr_dtype)
        self.reset()
        logger.info(f"🎚️ Silero VAD loaded: {self.model_path.name}")

    def reset(self) -> None:
        self._h = np.zeros(STATE_SHAPE, dtype=np.float32)
        self._c = np.zeros(STATE_SHAPE, dtype=np.float32)

    def push_frame(self, frame: np.ndarray) -> VadResult:
        """Score one 480-sample frame and advance the recurrent state."""
        if len(frame) != FRAME_SIZE:
            raise ValueError(f"VAD frame must be {FRAME_SIZE} samples, got {len(frame)}")

        outputs = run_session(
            self.session,
            {
                "input": np.asarray(frame, dtype=np.float32)[None, :],
                "sr": self._sr,
                "h": self._h,
                "c": self._c,
            },
            ["output", "hn", "cn"],
            what="vad",
        )
        self._h = outputs["hn"]
        self._c = outputs["cn"]
        return VadResult(probability=float(np.asarray(outputs["output"]).reshape(-1)[0]))
