import logging
import time
import uuid
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.concurrency import run_in_threadpool

from transcribe.api.routes import router as api_router
from transcribe.config import (
    ALLOWED_ORIGINS, ENGINE_TYPE, HOST, LOG_LEVEL, MAX_QUEUE_SIZE, PORT, VAD_MODEL_PATH,
    get_model_id,
)
from transcribe.core.factory import configured_spec, create_engine, load_spec
from transcribe.services.transcription import TranscriptionService

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("local_transcribe.main")


def _create_vad():
    """VAD_MODEL_PATH 设置时启用智能切片"""
    if not VAD_MODEL_PATH:
        return None
    from transcribe.adapters.vad import SileroVad

    return SileroVad(VAD_MODEL_PATH)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    启动：按配置建引擎并加载模型（阻塞加载放进线程池），再启动 worker。
    关闭：停 worker，释放当前引擎（可能是热换后的引擎）。
    """
    spec = configured_spec()
    logger.info(f"🌱 Starting with engine={ENGINE_TYPE}, model={spec.alias} ({spec.resolved_path})")

    engine = create_engine()
    await run_in_threadpool(load_spec, engine, spec)

    service = TranscriptionService(
        engine=engine,
        max_queue_size=MAX_QUEUE_SIZE,
        initial_model_spec=spec,
        vad=_create_vad(),
    )
    await service.start_worker()

    app.state.service = service
    app.state.engine = engine
    app.state.engine_type = ENGINE_TYPE
    app.state.model_id = get_model_id()
    logger.info("✅ Ready for requests")

    yield

    logger.info("🛑 Shutting down...")
    await service.stop_worker()
    service.engine.unload_model()


app = FastAPI(title="Local Transcribe Service", version="1.0.0", lifespan=lifespan)

# 默认只允许本机来源
cors_origins = ["*"] if ALLOWED_ORIGINS == "*" else ALLOWED_ORIGINS.split(",")
logger.info(f"🔒 CORS origins: {cors_origins}")
app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def assign_request_id(request: Request, call_next):
    """每个请求一个 request_id，写入日志和 X-Request-ID 响应头"""
    request_id = str(uuid.uuid4())
    request.state.request_id = request_id
    started = time.time()
    logger.info(f"[{request_id}] ➡️ {request.method} {request.url.path}")

    response = await call_next(request)

    logger.info(f"[{request_id}] ⬅️ {response.status_code} in {time.time() - started:.2f}s")
    response.headers["X-Request-ID"] = request_id
    return response


app.include_router(api_router)


@app.get("/health")
async def health_check():
    service = getattr(app.state, "service", None)
    degraded = service is not None and service.is_degraded
    return {
        "status": "degraded" if degraded else "healthy",
        "engine_type": getattr(app.state, "engine_type", "unknown"),
        "model": getattr(app.state, "model_id", "unknown"),
    }


if __name__ == "__main__":
    uvicorn.run(app, host=HOST, port=PORT)
