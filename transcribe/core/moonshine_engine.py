"""
Moonshine encoder-decoder engine on onnxruntime.

Model directory layout:
    encoder_model.onnx
    decoder_model_merged.onnx   (with and without KV cache in one graph)
    tokenizer.json
"""

import logging
import math
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

import numpy as np
import onnxruntime as ort

from transcribe.adapters.audio_io import duration_seconds
from transcribe.core.base_engine import ENGINE_CAPABILITIES, EngineType, TranscriptionEngine
from transcribe.core.decoding import KVCache, beam_search, greedy_decode
from transcribe.core.features import RawWaveformFrontend, split_windows
from transcribe.core.onnx_session import create_session, input_names, run_session
from transcribe.core.result import TranscriptionResult, merge_results
from transcribe.core.tokenizer import HFTokenizer

logger = logging.getLogger(__name__)

ENCODER_FILE = "encoder_model.onnx"
DECODER_FILE = "decoder_model_merged.onnx"
TOKENIZER_FILE = "tokenizer.json"

START_TOKEN_ID = 1
EOS_TOKEN_ID = 2


class MoonshineVariant(str, Enum):
    TINY = "tiny"
    TINY_AR = "tiny-ar"
    TINY_ZH = "tiny-zh"
    TINY_JA = "tiny-ja"
    TINY_KO = "tiny-ko"
    TINY_UK = "tiny-uk"
    TINY_VI = "tiny-vi"
    BASE = "base"
    BASE_ES = "base-es"

    @property
    def is_base(self) -> bool:
        return self.value.startswith("base")

    @property
    def num_layers(self) -> int:
        return 8 if self.is_base else 6

    @property
    def num_heads(self) -> int:
        return 8

    @property
    def head_dim(self) -> int:
        return 52 if self.is_base else 36

    @property
    def token_rate(self) -> int:
        """Upper bound on tokens per second of audio, used for the default max_length."""
        # English variants need fewer tokens per second than the others
        return 6 if self in (MoonshineVariant.TINY, MoonshineVariant.BASE) else 13

    @classmethod
    def from_path(cls, model_path: str | Path) -> "MoonshineVariant":
        """
        Infer the variant from a folder name such as `moonshine-tiny-ar`.

        Raises:
            ValueError: no variant name appears in the folder name
        """
        name = Path(model_path).name.lower()
        matches = [
            v for v in cls
            if re.search(rf"(?:^|[-_.]){re.escape(v.value)}(?:$|[-_.])", name)
        ]
        if not matches:
            known = ", ".join(v.value for v in cls)
            raise ValueError(f"cannot infer Moonshine variant from '{name}' (expected one of: {known})")
        return max(matches, key=lambda v: len(v.value))


@dataclass(frozen=True)
class MoonshineModelParams:
    variant: MoonshineVariant = MoonshineVariant.BASE
    max_window_seconds: float = 30.0

    def __post_init__(self):
        object.__setattr__(self, "variant", MoonshineVariant(self.variant))


@dataclass
class MoonshineInferenceParams:
    # None = ceil(duration * token_rate)
    max_length: int | None = None
    beam_size: int = 1


@dataclass
class _MoonshineModel:
    encoder: ort.InferenceSession
    decoder: ort.InferenceSession
    tokenizer: HFTokenizer
    variant: MoonshineVariant
    max_window_seconds: float
    uses_attention_mask: bool


def default_max_length(duration: float, token_rate: int) -> int:
    return max(1, math.ceil(duration * token_rate))


class MoonshineEngine(TranscriptionEngine[MoonshineModelParams, MoonshineInferenceParams, _MoonshineModel]):
    engine_type = EngineType.MOONSHINE
    model_params_type = MoonshineModelParams
    inference_params_type = MoonshineInferenceParams
    CAPABILITIES = ENGINE_CAPABILITIES[EngineType.MOONSHINE]

    def __init__(self):
        super().__init__()
        self.frontend = RawWaveformFrontend(min_seconds=0.1)

    def default_model_params(self, model_path: Path) -> MoonshineModelParams:
        return MoonshineModelParams(variant=MoonshineVariant.from_path(model_path))

    def missing_files(self, model_path: Path, params: MoonshineModelParams) -> list[Path]:
        if not model_path.is_dir():
            return [model_path]
        required = [ENCODER_FILE, DECODER_FILE, TOKENIZER_FILE]
        return [model_path / name for name in required if not (model_path / name).exists()]

    def _load(self, model_path: Path, params: MoonshineModelParams) -> _MoonshineModel:
        tokenizer = HFTokenizer.from_file(model_path / TOKENIZER_FILE)
        encoder = create_session(model_path / ENCODER_FILE)
        decoder = create_session(model_path / DECODER_FILE)
        logger.info(
            f"   variant={params.variant.value} layers={params.variant.num_layers} vocab={tokenizer.vocab_size}"
        )
        return _MoonshineModel(
            encoder=encoder,
            decoder=decoder,
            tokenizer=tokenizer,
            variant=params.variant,
            max_window_seconds=params.max_window_seconds,
            uses_attention_mask="attention_mask" in input_names(encoder),
        )

    def _transcribe(
        self,
        model: _MoonshineModel,
        samples: np.ndarray,
        params: MoonshineInferenceParams,
    ) -> TranscriptionResult:
        windows = split_windows(samples, model.max_window_seconds)
        if len(windows) > 1:
            logger.info(f"✂️ Splitting {duration_seconds(samples):.1f}s of audio into {len(windows)} windows")

        results = [self._transcribe_window(model, w.samples, params) for w in windows]
        return merge_results(results, [w.offset for w in windows])

    def _transcribe_window(
        self,
        model: _MoonshineModel,
        samples: np.ndarray,
        params: MoonshineInferenceParams,
    ) -> TranscriptionResult:
        hidden = self._encode(model, samples)

        max_length = params.max_length
        if max_length is None:
            max_length = default_max_length(duration_seconds(samples), model.variant.token_rate)

        def step(token: int, cache: KVCache) -> tuple[np.ndarray, KVCache]:
            return self._decode_step(model, hidden, token, cache)

        cache = KVCache.empty(model.variant.num_layers, model.variant.num_heads, model.variant.head_dim)
        if params.beam_size > 1:
            output = beam_search(step, START_TOKEN_ID, EOS_TOKEN_ID, max_length, cache, params.beam_size)
        else:
            output = greedy_decode(step, START_TOKEN_ID, EOS_TOKEN_ID, max_length, cache)

        if output.truncated:
            logger.warning(f"Decoding stopped at max_length={max_length} before end of sequence")

        return TranscriptionResult(
            text=model.tokenizer.decode(output.tokens),
            truncated=output.truncated,
        )

    def _encode(self, model: _MoonshineModel, samples: np.ndarray) -> np.ndarray:
        audio = self.frontend(samples)
        feeds = {"input_values": audio}
        if model.uses_attention_mask:
            feeds["attention_mask"] = np.ones_like(audio, dtype=np.int64)
        outputs = run_session(model.encoder, feeds, ["last_hidden_state"], what="encoder")
        return outputs["last_hidden_state"]

    def _decode_step(
        self,
        model: _MoonshineModel,
        hidden: np.ndarray,
        token: int,
        cache: KVCache,
    ) -> tuple[np.ndarray, KVCache]:
        feeds = {
            "input_ids": np.array([[token]], dtype=np.int64),
            "encoder_hidden_states": hidden,
            "use_cache_branch": np.array([cache.use_cache], dtype=bool),
            **cache.feeds(),
        }
        outputs = run_session(
            model.decoder,
            feeds,
            ["logits"] + KVCache.output_names(model.variant.num_layers),
            what="decoder",
        )
        return outputs["logits"], cache.advance(outputs)
