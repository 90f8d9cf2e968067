"""
引擎工厂模块。
根据配置或 ModelSpec 创建对应的 ASR 引擎实例，并按 ModelSpec 加载模型。
"""

import logging

from transcribe.config import ENGINE_TYPE, WHISPERFILE_BINARY, get_model_id
from transcribe.core.base_engine import EngineType, TranscriptionEngine
from transcribe.core.model_registry import ModelSpec, lookup

logger = logging.getLogger(__name__)


def _configured_engine_type() -> EngineType:
    try:
        return EngineType(ENGINE_TYPE)
    except ValueError:
        raise ValueError(
            f"Unsupported ENGINE_TYPE: '{ENGINE_TYPE}'. "
            f"Must be one of: {', '.join(t.value for t in EngineType)}."
        ) from None


def configured_spec() -> ModelSpec:
    """
    服务启动时使用的 ModelSpec（由 MODEL_ID / <ENGINE>_MODEL_ID 决定）。

    Raises:
        ValueError: 模型所属引擎与 ENGINE_TYPE 不一致
    """
    spec = lookup(get_model_id())
    if spec.engine_type != _configured_engine_type():
        raise ValueError(
            f"Model '{spec.alias}' belongs to engine '{spec.engine_type.value}', "
            f"but ENGINE_TYPE is '{ENGINE_TYPE}'."
        )
    return spec


def create_engine() -> TranscriptionEngine:
    """
    根据 ENGINE_TYPE 环境变量创建引擎实例（服务启动时调用）。
    """
    return _create_by_type(_configured_engine_type())


def create_engine_for_spec(spec: ModelSpec) -> TranscriptionEngine:
    """
    根据 ModelSpec 创建引擎实例（动态换模时调用）。
    """
    return _create_by_type(spec.engine_type)


def load_spec(engine: TranscriptionEngine, spec: ModelSpec) -> None:
    """
    按 ModelSpec 加载模型（阻塞调用）。
    spec.model_params 为空时使用引擎默认参数。
    """
    if spec.model_params:
        params = engine.model_params_type(**spec.model_params)
        engine.load_model_with_params(spec.resolved_path, params)
    else:
        engine.load_model(spec.resolved_path)


def _create_by_type(engine_type: EngineType) -> TranscriptionEngine:
    if engine_type == EngineType.PARAKEET:
        from transcribe.core.parakeet_engine import ParakeetEngine

        logger.info("🏭 Creating Parakeet engine")
        return ParakeetEngine()

    elif engine_type == EngineType.MOONSHINE:
        from transcribe.core.moonshine_engine import MoonshineEngine

        logger.info("🏭 Creating Moonshine engine")
        return MoonshineEngine()

    elif engine_type == EngineType.WHISPER:
        from transcribe.core.whisper_engine import WhisperEngine

        logger.info("🏭 Creating Whisper (whisper.cpp) engine")
        return WhisperEngine()

    elif engine_type == EngineType.WHISPERFILE:
        from transcribe.core.whisperfile_engine import WhisperfileEngine

        logger.info(f"🏭 Creating Whisperfile engine with binary: {WHISPERFILE_BINARY}")
        return WhisperfileEngine(binary_path=WHISPERFILE_BINARY)

    else:
        raise ValueError(
            f"Unsupported engine_type: '{engine_type}'. "
            f"Must be one of: {', '.join(t.value for t in EngineType)}."
        )
