"""
Parakeet (NeMo FastConformer + TDT/RNNT) engine on onnxruntime.

Model directory layout:
    encoder-model.onnx | encoder-model.int8.onnx
    decoder_joint-model.onnx | decoder_joint-model.int8.onnx
    nemo128.onnx      (log-mel preprocessor)
    vocab.txt         ("<piece> <id>" per line, includes <blk>)
"""

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

import numpy as np
import onnxruntime as ort

from transcribe.adapters.audio_io import duration_seconds
from transcribe.core.base_engine import ENGINE_CAPABILITIES, EngineType, TranscriptionEngine
from transcribe.core.decoding import DEFAULT_MAX_SYMBOLS_PER_STEP, TransducerOutput, transducer_decode
from transcribe.core.features import NemoPreprocessor, split_windows
from transcribe.core.onnx_session import create_session, input_shape, run_session
from transcribe.core.result import TimestampGranularity, TranscriptionResult, TranscriptionSegment, merge_results
from transcribe.core.tokenizer import VocabTokenizer

logger = logging.getLogger(__name__)

PREPROCESSOR_FILE = "nemo128.onnx"
VOCAB_FILE = "vocab.txt"

# FastConformer: 10ms hop x 8 subsampling
FRAME_SECONDS = 0.08
SENTENCE_END = (".", "?", "!")


class Quantization(str, Enum):
    FP32 = "fp32"
    INT8 = "int8"


@dataclass(frozen=True)
class ParakeetModelParams:
    quantization: Quantization = Quantization.FP32
    max_window_seconds: float = 300.0
    max_symbols_per_step: int = DEFAULT_MAX_SYMBOLS_PER_STEP

    def __post_init__(self):
        # accept plain strings from the model registry
        object.__setattr__(self, "quantization", Quantization(self.quantization))

    @classmethod
    def int8(cls) -> "ParakeetModelParams":
        return cls(quantization=Quantization.INT8)

    @classmethod
    def fp32(cls) -> "ParakeetModelParams":
        return cls(quantization=Quantization.FP32)

    @property
    def _suffix(self) -> str:
        return ".int8.onnx" if self.quantization == Quantization.INT8 else ".onnx"

    @property
    def encoder_file(self) -> str:
        return f"encoder-model{self._suffix}"

    @property
    def decoder_joint_file(self) -> str:
        return f"decoder_joint-model{self._suffix}"

    def required_files(self) -> list[str]:
        return [self.encoder_file, self.decoder_joint_file, PREPROCESSOR_FILE, VOCAB_FILE]


@dataclass
class ParakeetInferenceParams:
    timestamp_granularity: TimestampGranularity = TimestampGranularity.SEGMENT

    def __post_init__(self):
        self.timestamp_granularity = TimestampGranularity.parse(self.timestamp_granularity)


@dataclass
class _ParakeetModel:
    preprocessor: NemoPreprocessor
    encoder: ort.InferenceSession
    decoder_joint: ort.InferenceSession
    tokenizer: VocabTokenizer
    # logits past this index are TDT duration logits
    num_tokens: int
    state_shapes: tuple[tuple[int, ...], tuple[int, ...]]
    max_window_seconds: float
    max_symbols_per_step: int


def _state_shape(session: ort.InferenceSession, name: str) -> tuple[int, ...]:
    # symbolic batch dims -> 1
    return tuple(d if isinstance(d, int) and d > 0 else 1 for d in input_shape(session, name))


class ParakeetEngine(TranscriptionEngine[ParakeetModelParams, ParakeetInferenceParams, _ParakeetModel]):
    """
    Parakeet TDT/RNNT engine.

    Audio longer than `max_window_seconds` is transcribed window by window and
    the results are merged with time offsets.
    """

    engine_type = EngineType.PARAKEET
    model_params_type = ParakeetModelParams
    inference_params_type = ParakeetInferenceParams
    CAPABILITIES = ENGINE_CAPABILITIES[EngineType.PARAKEET]

    def default_model_params(self, model_path: Path) -> ParakeetModelParams:
        # Prefer the export that is actually on disk
        int8 = ParakeetModelParams.int8()
        fp32 = ParakeetModelParams.fp32()
        if not (model_path / fp32.encoder_file).exists() and (model_path / int8.encoder_file).exists():
            return int8
        return fp32

    def missing_files(self, model_path: Path, params: ParakeetModelParams) -> list[Path]:
        if not model_path.is_dir():
            return [model_path]
        return [model_path / name for name in params.required_files() if not (model_path / name).exists()]

    def _load(self, model_path: Path, params: ParakeetModelParams) -> _ParakeetModel:
        tokenizer = VocabTokenizer.from_file(model_path / VOCAB_FILE)
        preprocessor = NemoPreprocessor(create_session(model_path / PREPROCESSOR_FILE))
        encoder = create_session(model_path / params.encoder_file)
        decoder_joint = create_session(model_path / params.decoder_joint_file)

        num_tokens = max(tokenizer.vocab_size, tokenizer.blank_id + 1)
        state_shapes = (
            _state_shape(decoder_joint, "input_states_1"),
            _state_shape(decoder_joint, "input_states_2"),
        )
        logger.info(
            f"   vocab={num_tokens} blank={tokenizer.blank_id} quantization={params.quantization.value}"
        )
        return _ParakeetModel(
            preprocessor=preprocessor,
            encoder=encoder,
            decoder_joint=decoder_joint,
            tokenizer=tokenizer,
            num_tokens=num_tokens,
            state_shapes=state_shapes,
            max_window_seconds=params.max_window_seconds,
            max_symbols_per_step=params.max_symbols_per_step,
        )

    def _transcribe(
        self,
        model: _ParakeetModel,
        samples: np.ndarray,
        params: ParakeetInferenceParams,
    ) -> TranscriptionResult:
        windows = split_windows(samples, model.max_window_seconds)
        if len(windows) > 1:
            logger.info(f"✂️ Splitting {duration_seconds(samples):.1f}s of audio into {len(windows)} windows")

        results = [self._transcribe_window(model, w.samples, params) for w in windows]
        return merge_results(results, [w.offset for w in windows])

    def _transcribe_window(
        self,
        model: _ParakeetModel,
        samples: np.ndarray,
        params: ParakeetInferenceParams,
    ) -> TranscriptionResult:
        encoder_out = self._encode(model, samples)
        output = transducer_decode(
            encoder_out,
            step=lambda frame, token, state: self._decode_step(model, frame, token, state),
            blank_id=model.tokenizer.blank_id,
            num_tokens=model.num_tokens,
            state=tuple(np.zeros(shape, dtype=np.float32) for shape in model.state_shapes),
            max_symbols_per_step=model.max_symbols_per_step,
        )
        if output.truncated:
            logger.warning("Emission cap reached on at least one frame; output may be incomplete")

        return TranscriptionResult(
            text=model.tokenizer.decode(output.tokens),
            segments=_segments(model.tokenizer, output, params.timestamp_granularity),
            truncated=output.truncated,
        )

    def _encode(self, model: _ParakeetModel, samples: np.ndarray) -> np.ndarray:
        """Samples -> encoder frames [T, D]."""
        features, features_lens = model.preprocessor(samples)
        outputs = run_session(
            model.encoder,
            {"audio_signal": features, "length": features_lens},
            ["outputs", "encoded_lengths"],
            what="encoder",
        )
        encoded = outputs["outputs"][0]  # [D, T]
        length = int(outputs["encoded_lengths"][0])
        return encoded.T[:length]

    def _decode_step(
        self,
        model: _ParakeetModel,
        frame: np.ndarray,
        token: int,
        state: tuple[np.ndarray, np.ndarray],
    ) -> tuple[np.ndarray, Any]:
        outputs = run_session(
            model.decoder_joint,
            {
                "encoder_outputs": frame.astype(np.float32)[None, :, None],
                "targets": np.array([[token]], dtype=np.int32),
                "target_length": np.array([1], dtype=np.int32),
                "input_states_1": state[0],
                "input_states_2": state[1],
            },
            ["outputs", "output_states_1", "output_states_2"],
            what="decoder_joint",
        )
        return outputs["outputs"], (outputs["output_states_1"], outputs["output_states_2"])


def _segments(
    tokenizer: VocabTokenizer,
    output: TransducerOutput,
    granularity: TimestampGranularity,
) -> list[TranscriptionSegment]:
    tokens = []
    for token_id, frame in zip(output.tokens, output.frames):
        text = tokenizer.decode_piece(token_id)
        if not text:
            continue
        start = frame * FRAME_SECONDS
        tokens.append(TranscriptionSegment(start=start, end=start + FRAME_SECONDS, text=text))

    if granularity == TimestampGranularity.TOKEN:
        return [TranscriptionSegment(t.start, t.end, t.text.strip()) for t in tokens]

    words = []
    current: list[TranscriptionSegment] = []
    for token in tokens:
        if token.text.startswith(" ") and current:
            words.append(_join(current, ""))
            current = []
        current.append(token)
    if current:
        words.append(_join(current, ""))

    if granularity == TimestampGranularity.WORD:
        return words

    sentences = []
    current = []
    for word in words:
        current.append(word)
        if word.text.endswith(SENTENCE_END):
            sentences.append(_join(current, " "))
            current = []
    if current:
        sentences.append(_join(current, " "))
    return sentences


def _join(parts: list[TranscriptionSegment], sep: str) -> TranscriptionSegment:
    text = sep.join(p.text for p in parts).strip()
    return TranscriptionSegment(start=parts[0].start, end=parts[-1].end, text=text)
