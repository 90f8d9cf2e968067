"""
Whisper engine backed by whisper.cpp (pywhispercpp).

The model is a single GGML/GGUF file (e.g. `whisper-medium-q4_1.bin`).
Log-mel extraction and the decoder search run inside whisper.cpp.
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import numpy as np
from pywhispercpp.model import Model

from transcribe.core.base_engine import ENGINE_CAPABILITIES, EngineType, TranscriptionEngine
from transcribe.core.errors import InferenceFailure
from transcribe.core.result import TranscriptionResult, TranscriptionSegment

logger = logging.getLogger(__name__)

# whisper.cpp sampling strategies
GREEDY = 0
BEAM_SEARCH = 1

# whisper.cpp default; sent on every call so an earlier override never sticks
DEFAULT_TEMPERATURE = 0.0


def _default_threads() -> int:
    return min(4, os.cpu_count() or 1)


@dataclass(frozen=True)
class WhisperModelParams:
    n_threads: int = _default_threads()
    # 1 = greedy, > 1 = beam search
    beam_size: int = 1


@dataclass
class WhisperInferenceParams:
    # None = automatic language detection
    language: str | None = None
    translate: bool = False
    initial_prompt: str | None = None
    temperature: float | None = None


class WhisperEngine(TranscriptionEngine[WhisperModelParams, WhisperInferenceParams, Model]):
    engine_type = EngineType.WHISPER
    model_params_type = WhisperModelParams
    inference_params_type = WhisperInferenceParams
    CAPABILITIES = ENGINE_CAPABILITIES[EngineType.WHISPER]

    def missing_files(self, model_path: Path, params: WhisperModelParams) -> list[Path]:
        return [] if model_path.is_file() else [model_path]

    def _load(self, model_path: Path, params: WhisperModelParams) -> Model:
        strategy = BEAM_SEARCH if params.beam_size > 1 else GREEDY
        logger.info(f"   threads={params.n_threads} strategy={'beam' if strategy else 'greedy'}")
        return Model(
            str(model_path),
            params_sampling_strategy=strategy,
            redirect_whispercpp_logs_to=None,
            n_threads=params.n_threads,
            print_realtime=False,
            print_progress=False,
            print_timestamps=False,
        )

    def _call_params(self, params: WhisperInferenceParams) -> dict[str, Any]:
        # Every per-call option is passed explicitly; whisper.cpp keeps them between calls
        call: dict[str, Any] = {
            "language": params.language or "auto",
            "translate": params.translate,
            "initial_prompt": params.initial_prompt or "",
            "temperature": params.temperature if params.temperature is not None else DEFAULT_TEMPERATURE,
        }
        if self.model_params.beam_size > 1:
            call["beam_search"] = {"beam_size": self.model_params.beam_size, "patience": -1.0}
        return call

    def _transcribe(
        self,
        model: Model,
        samples: np.ndarray,
        params: WhisperInferenceParams,
    ) -> TranscriptionResult:
        try:
            raw_segments = model.transcribe(samples, **self._call_params(params))
        except Exception as e:
            raise InferenceFailure(f"whisper.cpp: {e}") from e

        # t0 / t1 are in centiseconds
        segments = [
            TranscriptionSegment(start=seg.t0 / 100.0, end=seg.t1 / 100.0, text=seg.text.strip())
            for seg in raw_segments
        ]
        text = " ".join(s.text for s in segments if s.text)
        return TranscriptionResult(text=text, segments=segments)
