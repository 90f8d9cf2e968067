"""
Model Registry for dynamic model switching.

Maps user-facing aliases to full ModelSpecs (model path + engine type + capabilities).
Single source of truth for all supported models. Relative model paths are
resolved against MODELS_DIR.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from transcribe.config import MODELS_DIR
from transcribe.core.base_engine import ENGINE_CAPABILITIES, EngineCapabilities, EngineType

# OpenAI-compat placeholder values that mean "use the server's current model"
# Empty string is also passthrough: form data serialises None as "" in some clients
_OPENAI_PASSTHROUGH_VALUES: frozenset[str] = frozenset({"whisper-1", ""})

_GGML_SUFFIXES = (".bin", ".gguf")

_PARAKEET_CAPS = ENGINE_CAPABILITIES[EngineType.PARAKEET]
_MOONSHINE_CAPS = ENGINE_CAPABILITIES[EngineType.MOONSHINE]
_WHISPER_CAPS = ENGINE_CAPABILITIES[EngineType.WHISPER]
_WHISPERFILE_CAPS = ENGINE_CAPABILITIES[EngineType.WHISPERFILE]


@dataclass(frozen=True)
class ModelSpec:
    """Everything needed to load a named ASR model."""

    alias: str
    model_path: str
    engine_type: EngineType
    description: str
    capabilities: EngineCapabilities
    # keyword arguments for the engine's ModelParams (empty = engine defaults)
    model_params: dict[str, Any] = field(default_factory=dict, hash=False, compare=False)

    @property
    def resolved_path(self) -> Path:
        path = Path(self.model_path)
        return path if path.is_absolute() else MODELS_DIR / path


def _moonshine(variant: str, description: str) -> "ModelSpec":
    return ModelSpec(
        alias=f"moonshine-{variant}",
        model_path=f"moonshine-{variant}",
        engine_type=EngineType.MOONSHINE,
        description=description,
        capabilities=_MOONSHINE_CAPS,
        model_params={"variant": variant},
    )


# fmt: off
_REGISTRY: dict[str, ModelSpec] = {
    spec.alias: spec
    for spec in [
        ModelSpec(
            alias="parakeet-v3-int8",
            model_path="parakeet-tdt-0.6b-v3-int8",
            engine_type=EngineType.PARAKEET,
            description="NVIDIA Parakeet TDT 0.6B v3 (int8). 25 European languages, fast on CPU, word timestamps.",
            capabilities=_PARAKEET_CAPS,
            model_params={"quantization": "int8"},
        ),
        ModelSpec(
            alias="parakeet-v3",
            model_path="parakeet-tdt-0.6b-v3",
            engine_type=EngineType.PARAKEET,
            description="NVIDIA Parakeet TDT 0.6B v3 (fp32). Slightly more accurate, ~4x the memory of int8.",
            capabilities=_PARAKEET_CAPS,
            model_params={"quantization": "fp32"},
        ),
        _moonshine("tiny", "Moonshine Tiny (English). Smallest and fastest, no timestamps."),
        _moonshine("base", "Moonshine Base (English). Better accuracy than tiny, no timestamps."),
        _moonshine("tiny-ar", "Moonshine Tiny (Arabic)."),
        _moonshine("tiny-zh", "Moonshine Tiny (Chinese)."),
        _moonshine("tiny-ja", "Moonshine Tiny (Japanese)."),
        _moonshine("tiny-ko", "Moonshine Tiny (Korean)."),
        _moonshine("tiny-uk", "Moonshine Tiny (Ukrainian)."),
        _moonshine("tiny-vi", "Moonshine Tiny (Vietnamese)."),
        _moonshine("base-es", "Moonshine Base (Spanish)."),
        ModelSpec(
            alias="whisper-medium-q4_1",
            model_path="whisper-medium-q4_1.bin",
            engine_type=EngineType.WHISPER,
            description="Whisper Medium (GGML q4_1) via whisper.cpp. Multilingual, translation to English.",
            capabilities=_WHISPER_CAPS,
        ),
        ModelSpec(
            alias="whisper-large-v3-turbo",
            model_path="ggml-large-v3-turbo-q5_0.bin",
            engine_type=EngineType.WHISPER,
            description="Whisper Large v3 Turbo (GGML q5_0) via whisper.cpp. Best accuracy, slowest.",
            capabilities=_WHISPER_CAPS,
        ),
        ModelSpec(
            alias="whisperfile-small",
            model_path="ggml-small.bin",
            engine_type=EngineType.WHISPERFILE,
            description="Whisper Small served by a local whisperfile process (spawned on load).",
            capabilities=_WHISPERFILE_CAPS,
        ),
    ]
}
# fmt: on

# Reverse index: model_path → alias (for resolving paths back to human aliases)
_MODEL_PATH_TO_ALIAS: dict[str, str] = {}
for _spec in _REGISTRY.values():
    _MODEL_PATH_TO_ALIAS[_spec.model_path] = _spec.alias
    _MODEL_PATH_TO_ALIAS[str(_spec.resolved_path)] = _spec.alias


def infer_engine_type(model_path: str) -> EngineType | None:
    """Guess the engine from a model path: folder name for ONNX exports, suffix for GGML files."""
    name = Path(model_path).name.lower()
    if "whisperfile" in model_path.lower():
        return EngineType.WHISPERFILE
    if name.endswith(_GGML_SUFFIXES):
        return EngineType.WHISPER
    if "parakeet" in name:
        return EngineType.PARAKEET
    if "moonshine" in name:
        return EngineType.MOONSHINE
    return None


def lookup(model: str) -> ModelSpec:
    """
    Resolve a model string to a ModelSpec.

    Resolution order:
      1. Exact alias match          ("parakeet-v3-int8", "moonshine-tiny")
      2. Registered model_path match ("parakeet-tdt-0.6b-v3-int8", "models/ggml-small.bin")
      3. Engine inference from the path name for unregistered models
         ("*parakeet*" → parakeet, "*moonshine*" → moonshine, "*.bin" / "*.gguf" → whisper)

    Raises:
        ValueError: if the string cannot be resolved to any known engine type.
    """
    # 1. Exact alias
    if model in _REGISTRY:
        return _REGISTRY[model]

    # 2. Registered model_path
    if model in _MODEL_PATH_TO_ALIAS:
        return _REGISTRY[_MODEL_PATH_TO_ALIAS[model]]

    # 3. Infer engine_type from the path name
    inferred_engine = infer_engine_type(model)
    if inferred_engine is None:
        raise ValueError(
            f"Unknown model: '{model}'. "
            f"Use GET /v1/models to see built-in models, "
            f"or pass a path to a 'parakeet*' / 'moonshine*' directory or a '.bin' / '.gguf' file."
        )

    # Ad-hoc spec; engine defaults apply (Moonshine infers its variant from the folder name)
    capabilities = ENGINE_CAPABILITIES[inferred_engine]
    return ModelSpec(
        alias=model,
        model_path=model,
        engine_type=inferred_engine,
        description="Custom model.",
        capabilities=capabilities,
    )


def is_passthrough(model: str | None) -> bool:
    """Return True if this model value means 'use the server's current model' (no switch)."""
    return model is None or model in _OPENAI_PASSTHROUGH_VALUES


def list_all() -> list[ModelSpec]:
    """Return all built-in registered models, sorted by alias."""
    return sorted(_REGISTRY.values(), key=lambda s: s.alias)


def alias_for(model_path: str) -> str | None:
    """Return the registered alias for a given model path, or None if not in registry."""
    return _MODEL_PATH_TO_ALIAS.get(model_path)
