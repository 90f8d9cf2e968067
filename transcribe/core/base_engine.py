"""
ASR 引擎抽象接口定义。
使用 Protocol 实现结构化子类型 (Structural Subtyping)，
TranscriptionEngine 提供各引擎共用的加载 / 释放 / 校验流程。
"""

import dataclasses
import logging
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, ClassVar, Generic, Protocol, TypeVar, runtime_checkable

import numpy as np

from transcribe.adapters.audio_io import read_wav, validate_samples
from transcribe.config import RESAMPLE_AUDIO
from transcribe.core.errors import ModelFilesMissing, NotLoaded
from transcribe.core.result import TranscriptionResult

logger = logging.getLogger(__name__)


class EngineType(str, Enum):
    """Closed set of engine variants."""

    PARAKEET = "parakeet"
    MOONSHINE = "moonshine"
    WHISPER = "whisper"
    WHISPERFILE = "whisperfile"


@dataclass(frozen=True)
class EngineCapabilities:
    """
    Declares what a loaded ASR model can produce.

    Frozen so capabilities are immutable after engine initialization.
    Used by the API layer to validate requests before they reach the engine.
    """

    timestamp: bool = False
    language_select: bool = False
    language_detect: bool = False
    translate: bool = False


# 每个引擎变体的能力声明；引擎类和模型注册表都从这里读取
ENGINE_CAPABILITIES: dict[EngineType, EngineCapabilities] = {
    EngineType.PARAKEET: EngineCapabilities(timestamp=True, language_detect=True),
    EngineType.MOONSHINE: EngineCapabilities(),
    EngineType.WHISPER: EngineCapabilities(
        timestamp=True, language_select=True, language_detect=True, translate=True
    ),
    EngineType.WHISPERFILE: EngineCapabilities(
        timestamp=True, language_select=True, language_detect=True, translate=True
    ),
}


@runtime_checkable
class ASREngine(Protocol):
    """
    ASR 引擎抽象接口。
    所有引擎实现必须遵循此接口。
    """

    @property
    def capabilities(self) -> EngineCapabilities:
        """Return the capabilities of the currently loaded model."""
        ...

    @property
    def is_loaded(self) -> bool:
        ...

    def load_model(self, model_path: str | Path, params: Any = None) -> None:
        """
        加载模型到内存。
        params 为 None 时使用该引擎的默认模型参数。
        """
        ...

    def load_model_with_params(self, model_path: str | Path, params: Any) -> None:
        ...

    def transcribe(self, audio: np.ndarray, params: Any = None) -> TranscriptionResult:
        """
        对 16kHz 单声道 float32 采样执行推理。

        Args:
            audio: 采样数组，取值范围 [-1, 1]
            params: 引擎特定的推理参数

        Returns:
            TranscriptionResult
        """
        ...

    def transcribe_file(self, file_path: str | Path, params: Any = None) -> TranscriptionResult:
        ...

    def make_inference_params(self, **options: Any) -> Any:
        ...

    def unload_model(self) -> None:
        """
        释放内存资源。
        用于热更新模型或服务关闭时清理资源。
        """
        ...


P = TypeVar("P")  # model params
I = TypeVar("I")  # inference params
H = TypeVar("H")  # loaded resources


class TranscriptionEngine(Generic[P, I, H]):
    """
    Shared lifecycle for the engine variants.

    Subclasses provide:
    - missing_files(path, params): files the variant needs but cannot find
    - _load(path, params): acquire every resource and return the handle;
      on failure it must release whatever it acquired itself
    - _transcribe(handle, samples, params): run one transcription
    - _release(handle): free the handle (optional, default drops references)
    """

    engine_type: ClassVar[EngineType]
    model_params_type: ClassVar[type]
    inference_params_type: ClassVar[type]
    CAPABILITIES: ClassVar[EngineCapabilities] = EngineCapabilities()

    def __init__(self):
        self.model_path: Path | None = None
        self.model_params: P | None = None
        self._handle: H | None = None

    @property
    def capabilities(self) -> EngineCapabilities:
        return self.CAPABILITIES

    @property
    def is_loaded(self) -> bool:
        return self._handle is not None

    def default_model_params(self, model_path: Path) -> P:
        return self.model_params_type()

    def default_inference_params(self) -> I:
        return self.inference_params_type()

    def missing_files(self, model_path: Path, params: P) -> list[Path]:
        return [] if model_path.exists() else [model_path]

    def load_model(self, model_path: str | Path, params: P | None = None) -> None:
        model_path = Path(model_path)
        if params is None:
            params = self.default_model_params(model_path)
        self.load_model_with_params(model_path, params)

    def load_model_with_params(self, model_path: str | Path, params: P) -> None:
        """
        Validate the model layout, release the current model, then load.

        Raises:
            ModelFilesMissing: required files are absent (current model is kept)
        """
        model_path = Path(model_path)
        missing = self.missing_files(model_path, params)
        if missing:
            raise ModelFilesMissing(missing)

        self.unload_model()

        logger.info(f"🚀 Loading {self.engine_type.value} model '{model_path}'...")
        start_time = time.time()
        try:
            handle = self._load(model_path, params)
        except Exception as e:
            logger.error(f"❌ Failed to load {self.engine_type.value} model: {e}")
            raise

        self._handle = handle
        self.model_path = model_path
        self.model_params = params
        logger.info(f"✅ Model loaded successfully in {time.time() - start_time:.2f}s")

    def _require_loaded(self) -> H:
        if self._handle is None:
            raise NotLoaded()
        return self._handle

    def transcribe(self, audio: np.ndarray, params: I | None = None) -> TranscriptionResult:
        handle = self._require_loaded()
        samples = validate_samples(audio)
        if params is None:
            params = self.default_inference_params()
        return self._transcribe(handle, samples, params)

    def transcribe_file(self, file_path: str | Path, params: I | None = None) -> TranscriptionResult:
        self._require_loaded()
        samples = read_wav(file_path, resample=RESAMPLE_AUDIO)
        return self.transcribe(samples, params)

    def make_inference_params(self, **options: Any) -> I:
        """
        Build this engine's inference params from generic request options.

        Unknown keys and None values are ignored; language "auto" means
        automatic detection.
        """
        known = {f.name for f in dataclasses.fields(self.inference_params_type)}
        kwargs = {}
        for key, value in options.items():
            if key not in known or value is None:
                continue
            if key == "language" and value in ("auto", ""):
                continue
            kwargs[key] = value
        return self.inference_params_type(**kwargs)

    def unload_model(self) -> None:
        handle, self._handle = self._handle, None
        if handle is None:
            return
        logger.info(f"♻️ Releasing {self.engine_type.value} model '{self.model_path}'...")
        self._release(handle)
        self.model_path = None
        self.model_params = None
        logger.info("✅ Model released.")

    def close(self) -> None:
        self.unload_model()

    def __enter__(self):
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def _load(self, model_path: Path, params: P) -> H:
        raise NotImplementedError

    def _transcribe(self, handle: H, samples: np.ndarray, params: I) -> TranscriptionResult:
        raise NotImplementedError

    def _release(self, handle: H) -> None:
        pass
