"""
统一配置管理模块。
通过环境变量控制服务行为。
支持从 .env 文件加载配置。
"""

import os
from pathlib import Path
from typing import Literal

# 加载 .env 文件（如果存在）
from dotenv import load_dotenv

# 查找 .env 文件：优先使用项目根目录的 .env
env_path = Path(__file__).parent.parent / ".env"
if env_path.exists():
    load_dotenv(dotenv_path=env_path)
else:
    # 尝试从当前工作目录加载
    load_dotenv()


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


# 引擎类型
EngineName = Literal["parakeet", "moonshine", "whisper", "whisperfile"]

# === 引擎配置 ===
ENGINE_TYPE: EngineName = os.getenv("ENGINE_TYPE", "parakeet")  # type: ignore

# === 模型配置 ===
# 模型根目录，registry 中的相对路径都基于此目录
MODELS_DIR = Path(os.getenv("MODELS_DIR", "models"))

# 各引擎默认模型（registry alias）
PARAKEET_MODEL_ID = os.getenv("PARAKEET_MODEL_ID", "parakeet-v3-int8")
MOONSHINE_MODEL_ID = os.getenv("MOONSHINE_MODEL_ID", "moonshine-base")
WHISPER_MODEL_ID = os.getenv("WHISPER_MODEL_ID", "whisper-medium-q4_1")
WHISPERFILE_MODEL_ID = os.getenv("WHISPERFILE_MODEL_ID", "whisperfile-small")

# 通用 MODEL_ID（优先级高于引擎特定配置），可以是 alias 或模型路径
MODEL_ID = os.getenv("MODEL_ID", None)


def get_model_id() -> str:
    """获取当前引擎应使用的模型 ID"""
    if MODEL_ID:
        return MODEL_ID
    if ENGINE_TYPE == "moonshine":
        return MOONSHINE_MODEL_ID
    if ENGINE_TYPE == "whisper":
        return WHISPER_MODEL_ID
    if ENGINE_TYPE == "whisperfile":
        return WHISPERFILE_MODEL_ID
    return PARAKEET_MODEL_ID


# === ONNX Runtime ===
# 0 = let onnxruntime decide
ORT_INTRA_THREADS = int(os.getenv("ORT_INTRA_THREADS", "0"))
ORT_PROVIDERS = [p.strip() for p in os.getenv("ORT_PROVIDERS", "CPUExecutionProvider").split(",") if p.strip()]

# === Whisperfile 服务进程 ===
WHISPERFILE_BINARY = os.getenv("WHISPERFILE_BINARY", "whisperfile")
WHISPERFILE_HOST = os.getenv("WHISPERFILE_HOST", "127.0.0.1")
WHISPERFILE_PORT = int(os.getenv("WHISPERFILE_PORT", "8080"))
WHISPERFILE_STARTUP_TIMEOUT_SEC = float(os.getenv("WHISPERFILE_STARTUP_TIMEOUT_SEC", "30"))
HEALTH_CHECK_INTERVAL_SEC = float(os.getenv("HEALTH_CHECK_INTERVAL_SEC", "0.1"))

# === 服务配置 ===
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "50070"))
MAX_QUEUE_SIZE = int(os.getenv("MAX_QUEUE_SIZE", "50"))

# === 安全配置 ===
# 上传文件大小限制（MB）
MAX_UPLOAD_SIZE_MB = int(os.getenv("MAX_UPLOAD_SIZE_MB", "200"))
# CORS 允许的源（默认仅本地，可设置为 * 放开）
ALLOWED_ORIGINS = os.getenv("ALLOWED_ORIGINS", "http://localhost,http://127.0.0.1")

# === 日志配置 ===
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# === 音频处理配置 ===
# 非 16kHz / 非单声道 WAV：默认直接拒绝 (InvalidAudio)，开启后用 soxr 重采样 + 下混
RESAMPLE_AUDIO = _env_bool("RESAMPLE_AUDIO")

# Silero VAD 模型路径；设置后长音频按静音点智能切片
VAD_MODEL_PATH = os.getenv("VAD_MODEL_PATH", "")
# 智能切片目标时长（秒）
SMART_CHUNK_SECONDS = int(os.getenv("SMART_CHUNK_SECONDS", "30"))

# Tokenizers 并行警告抑制
os.environ.setdefault("TOKENIZERS_PARALLELISM", "false")
