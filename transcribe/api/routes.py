"""
HTTP surface of the transcription service.

OpenAI-compatible `POST /v1/audio/transcriptions` plus model discovery
endpoints. Every request is validated (type, size, model, capabilities)
before it reaches the queue, so a bad request never costs a model switch.
"""

import logging
import os
from dataclasses import asdict

from fastapi import APIRouter, File, Form, HTTPException, Request, UploadFile
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, Field

from transcribe.config import MAX_UPLOAD_SIZE_MB
from transcribe.core.base_engine import EngineCapabilities
from transcribe.core.errors import InvalidAudio, NotLoaded, ServerCrashed
from transcribe.core.model_registry import ModelSpec, is_passthrough, list_all, lookup
from transcribe.core.result import TimestampGranularity
from transcribe.services.transcription import QueueFullError

logger = logging.getLogger(__name__)

# 引擎只解析 PCM16 WAV
ALLOWED_AUDIO_TYPES = {
    "audio/wav",
    "audio/x-wav",
    "audio/wave",
    "audio/vnd.wave",
}

# application/octet-stream 时按扩展名兜底
ALLOWED_AUDIO_EXTENSIONS = {".wav"}

# OpenAI response_format → output_format
_RESPONSE_FORMAT_MAP = {
    "verbose_json": "json",
    "text": "txt",
    "vtt": "srt",
}


class Segment(BaseModel):
    id: int
    start: float = 0.0
    end: float = 0.0
    text: str


class TranscriptionResponse(BaseModel):
    """output_format=json 时返回的结构化结果"""

    text: str
    duration: float | None = None
    language: str | None = None
    model: str | None = None
    truncated: bool = Field(False, description="解码触达长度上限，文本可能不完整")
    segments: list[Segment] | None = Field(None, description="分段信息（秒）")


class ModelInfo(BaseModel):
    alias: str
    model_path: str
    engine_type: str
    description: str
    capabilities: dict[str, bool]


class ModelsResponse(BaseModel):
    models: list[ModelInfo]
    current: str | None


router = APIRouter()


def _check_upload(file: UploadFile, request_id: str) -> float:
    """校验 MIME 类型与大小，返回文件大小 (MB)"""
    accepted = file.content_type in ALLOWED_AUDIO_TYPES
    if not accepted and file.content_type == "application/octet-stream":
        ext = os.path.splitext(file.filename or "")[1].lower()
        accepted = ext in ALLOWED_AUDIO_EXTENSIONS
        if accepted:
            logger.info(f"[{request_id}] 📎 Accepting {file.filename} by extension ({ext})")

    if not accepted:
        logger.warning(f"[{request_id}] ⛔ Rejected {file.filename} (type={file.content_type})")
        raise HTTPException(
            status_code=415,
            detail=f"Unsupported file type. Expected WAV audio, got: {file.content_type}",
        )

    file.file.seek(0, os.SEEK_END)
    size_mb = file.file.tell() / (1024 * 1024)
    file.file.seek(0)

    if size_mb > MAX_UPLOAD_SIZE_MB:
        logger.warning(f"[{request_id}] ⛔ Upload too large: {size_mb:.2f}MB > {MAX_UPLOAD_SIZE_MB}MB")
        raise HTTPException(
            status_code=413,
            detail=f"File size exceeds maximum allowed ({MAX_UPLOAD_SIZE_MB} MB)",
        )
    return size_mb


def _resolve_model(model: str | None) -> ModelSpec | None:
    """
    `model` 表单字段 → ModelSpec。

    None / "whisper-1" 返回 None，表示沿用当前引擎；无法识别的值返回 400。
    """
    if is_passthrough(model):
        return None
    try:
        return lookup(model)  # type: ignore[arg-type]
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from None


def _check_capabilities(
    caps: EngineCapabilities, label: str, output_format: str, with_timestamp: bool, translate: bool
) -> None:
    if output_format == "srt" and not caps.timestamp:
        raise HTTPException(
            status_code=400,
            detail=(
                f"SRT format requires timestamp support, but '{label}' does not produce "
                f"timestamps. Use output_format=json or output_format=txt instead."
            ),
        )
    if with_timestamp and not caps.timestamp:
        raise HTTPException(
            status_code=400,
            detail=f"with_timestamp=true requires timestamp support, but '{label}' does not produce timestamps.",
        )
    if translate and not caps.translate:
        raise HTTPException(status_code=400, detail=f"translate=true is not supported by '{label}'.")


def _check_granularity(value: str | None) -> None:
    if value is None:
        return
    try:
        TimestampGranularity.parse(value)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from None


def _model_label(request: Request, spec: ModelSpec | None) -> str:
    if isinstance(spec, ModelSpec):
        return spec.alias
    return str(getattr(request.app.state, "model_id", "unknown"))


def _to_json_response(result: dict, language: str, model_label: str) -> TranscriptionResponse:
    segments = [
        Segment(id=i, start=seg.get("start", 0.0), end=seg.get("end", 0.0), text=seg.get("text", ""))
        for i, seg in enumerate(result.get("segments") or [])
    ]
    return TranscriptionResponse(
        text=result.get("text", ""),
        duration=result.get("duration", 0.0),
        language=None if language == "auto" else language,
        model=model_label,
        truncated=result.get("truncated", False),
        segments=segments or None,
    )


@router.post("/v1/audio/transcriptions", response_model=None)
async def create_transcription(
    request: Request,
    file: UploadFile = File(..., description="Audio file (16-bit PCM WAV)"),
    model: str | None = Form(
        None,
        description=(
            "Model alias or model path; None/'whisper-1' keeps the current model. "
            "Examples: 'parakeet-v3-int8', 'moonshine-base', 'whisper-medium-q4_1'"
        ),
    ),
    language: str = Form("auto", description="Language code (auto, en, de, ...)"),
    prompt: str | None = Form(None, description="Initial prompt (Whisper only)"),
    temperature: float | None = Form(None, description="Sampling temperature (Whisper only)"),
    translate: bool = Form(False, description="Translate to English (Whisper only)"),
    timestamp_granularity: str | None = Form(
        None, description="Parakeet segment granularity: token, word, segment"
    ),
    response_format: str | None = Form(
        None, description="OpenAI-compatible format: json, verbose_json, text, vtt, srt"
    ),
    output_format: str = Form("json", description="Output format: json (default), txt, srt"),
    with_timestamp: bool = Form(False, description="Prefix txt lines with [mm:ss]"),
) -> TranscriptionResponse | PlainTextResponse:
    """
    Transcribe a WAV upload, optionally on a specific model.

    - `model=parakeet-v3-int8`: multilingual with word timestamps
    - `model=whisper-medium-q4_1`: language selection and translation
    - no `model` (or `whisper-1`): whatever is loaded now

    `json` returns segments; `txt` and `srt` return plain text.
    """
    request_id = getattr(request.state, "request_id", "unknown")

    # 文件错误优先于模型错误
    size_mb = _check_upload(file, request_id)
    requested_spec = _resolve_model(model)

    effective_format = response_format if response_format is not None else output_format
    effective_format = _RESPONSE_FORMAT_MAP.get(effective_format, effective_format)

    # 指定了模型就按它的能力校验，否则按当前引擎
    service = request.app.state.service
    caps = requested_spec.capabilities if requested_spec is not None else service.engine.capabilities
    label = _model_label(request, requested_spec)
    _check_capabilities(caps, label, effective_format, with_timestamp, translate)
    _check_granularity(timestamp_granularity)

    # 排队期间其他请求可能换模，先记下响应里要报告的模型
    response_label = _model_label(
        request, requested_spec if requested_spec is not None else service.current_model_spec
    )
    logger.info(
        f"[{request_id}] 🎧 {file.filename} ({size_mb:.2f}MB) → model={label}, format={effective_format}"
    )

    params = {
        "language": language,
        "initial_prompt": prompt,
        "temperature": temperature,
        "translate": translate,
        "timestamp_granularity": timestamp_granularity,
        "output_format": effective_format,
        "with_timestamp": with_timestamp,
    }

    try:
        result = await service.submit(file, params, request_id=request_id, model_spec=requested_spec)
    except QueueFullError:
        raise HTTPException(
            status_code=503, detail="Server is busy (Queue Full). Please try again later."
        ) from None
    except InvalidAudio as e:
        logger.warning(f"[{request_id}] Invalid audio: {e}")
        raise HTTPException(status_code=400, detail=str(e)) from None
    except NotLoaded as e:
        logger.error(f"[{request_id}] Engine not ready: {e}")
        raise HTTPException(
            status_code=503,
            detail=f"Model is not loaded. Please try again later. (Request ID: {request_id})",
        ) from None
    except ServerCrashed as e:
        logger.error(f"[{request_id}] Inference server crashed: {e}")
        raise HTTPException(
            status_code=502,
            detail=f"Inference server stopped unexpectedly. (Request ID: {request_id})",
        ) from None
    except Exception as e:
        # 不向客户端暴露内部路径或堆栈
        logger.error(f"[{request_id}] Unexpected error: {e}", exc_info=True)
        raise HTTPException(
            status_code=500,
            detail=f"Internal server error occurred. (Request ID: {request_id})",
        ) from None

    if effective_format in ("srt", "txt"):
        body = result if isinstance(result, str) else result.get("text", "")
        return PlainTextResponse(content=body, media_type="text/plain; charset=utf-8")
    return _to_json_response(result, language, response_label)


@router.get("/v1/models")
async def list_models(request: Request) -> ModelsResponse:
    """Built-in models; pass an `alias` as the `model` field of a transcription request."""
    current = request.app.state.service.current_model_spec
    return ModelsResponse(
        models=[
            ModelInfo(
                alias=spec.alias,
                model_path=spec.model_path,
                engine_type=spec.engine_type.value,
                description=spec.description,
                capabilities=asdict(spec.capabilities),
            )
            for spec in list_all()
        ],
        current=current.alias if current else None,
    )


@router.get("/v1/models/current")
async def get_current_model(request: Request) -> dict[str, object]:
    """Loaded model, its capabilities and queue state."""
    service = request.app.state.service
    spec = service.current_model_spec
    # 换模过程中 service.engine 可能暂时与 spec 不一致，能力以 spec 为准
    capabilities = spec.capabilities if spec else service.engine.capabilities

    return {
        "engine_type": spec.engine_type.value if spec else request.app.state.engine_type,
        "model_path": spec.model_path if spec else request.app.state.model_id,
        "model_alias": spec.alias if spec else None,
        "capabilities": asdict(capabilities),
        "is_loaded": service.engine.is_loaded,
        "degraded": service.is_degraded,
        "queue_size": service.queue.qsize(),
        "max_queue_size": service.queue.maxsize,
    }
