import asyncio
import logging
import shutil
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from fastapi import UploadFile
from starlette.concurrency import run_in_threadpool

from transcribe.adapters.audio_chunking import SmartChunker, VoiceActivityDetector, transcribe_chunked
from transcribe.adapters.audio_io import read_wav
from transcribe.config import RESAMPLE_AUDIO
from transcribe.core.base_engine import TranscriptionEngine
from transcribe.core.factory import create_engine_for_spec, load_spec
from transcribe.core.model_registry import ModelSpec
from transcribe.core.result import TranscriptionResult

JobOutput = str | dict[str, Any]


class QueueFullError(RuntimeError):
    """The job queue is at capacity."""


@dataclass
class TranscriptionJob:
    uid: str
    workdir: Path
    audio_path: Path
    params: dict[str, Any]
    future: asyncio.Future  # type: ignore[type-arg]
    enqueued_at: float = field(default_factory=time.time)
    # None 表示沿用当前引擎
    model_spec: ModelSpec | None = None

    @property
    def output_format(self) -> str:
        return self.params.get("output_format", "txt")

    def cleanup(self) -> None:
        if self.workdir.exists():
            shutil.rmtree(self.workdir, ignore_errors=True)


def render_output(transcription: TranscriptionResult, params: dict[str, Any], elapsed: float) -> JobOutput:
    """按 output_format 把引擎结果转换成 API 层需要的形态"""
    output_format = params.get("output_format", "txt")
    if output_format == "json":
        return {**transcription.to_dict(), "duration": elapsed}
    if output_format == "srt":
        return transcription.to_srt()
    return transcription.to_txt(with_timestamp=params.get("with_timestamp", False))


class TranscriptionService:
    """
    转录调度器：单消费者队列 + 串行推理。

    - 引擎同一时间只处理一个请求（所有推理都经过 _consume_loop）
    - 任务之间按需热换模型，先释放旧模型再加载新模型
    - 换模与恢复都失败时进入 degraded 状态，后续任务直接失败
    - 每个任务的上传文件放在独立临时目录，任务结束即删除
    """

    def __init__(
        self,
        engine: TranscriptionEngine,
        max_queue_size: int = 50,
        initial_model_spec: ModelSpec | None = None,
        vad: VoiceActivityDetector | None = None,
        chunker: SmartChunker | None = None,
    ):
        self.engine = engine
        self.vad = vad
        self.chunker = chunker or SmartChunker()
        self._current_model_spec = initial_model_spec
        self._engine_degraded = False
        self.logger = logging.getLogger(__name__)
        self.queue: asyncio.Queue[TranscriptionJob | None] = asyncio.Queue(maxsize=max_queue_size)
        self.is_running = False
        self.logger.info(
            f"🚦 Transcription service ready (queue={max_queue_size}, "
            f"smart chunking={'on' if vad else 'off'})"
        )

    @property
    def current_model_spec(self) -> ModelSpec | None:
        return self._current_model_spec

    @property
    def is_degraded(self) -> bool:
        return self._engine_degraded

    async def start_worker(self) -> None:
        self.is_running = True
        asyncio.create_task(self._consume_loop())
        self.logger.info("👷 Inference worker running.")

    async def stop_worker(self) -> None:
        """放入哨兵，worker 处理完已排队的任务后退出"""
        self.is_running = False
        await self.queue.put(None)

    async def submit(
        self,
        file: UploadFile,
        params: dict[str, Any],
        request_id: str = "unknown",
        model_spec: ModelSpec | None = None,
    ) -> JobOutput:
        """
        把上传文件落盘并排队，等待 worker 返回结果。

        Raises:
            QueueFullError: 队列已满（不排队，直接拒绝）
            引擎抛出的任何异常（InvalidAudio、NotLoaded 等）原样透传
        """
        if self.queue.full():
            self.logger.warning(f"[{request_id}] ⛔ Queue is full ({self.queue.maxsize}), rejecting")
            raise QueueFullError("Service busy: Queue is full.")

        workdir = Path(tempfile.mkdtemp(prefix="asr_task_"))
        job = TranscriptionJob(
            uid=request_id,
            workdir=workdir,
            audio_path=workdir / "upload.wav",
            params=params,
            future=asyncio.get_running_loop().create_future(),
            model_spec=model_spec,
        )
        try:
            with open(job.audio_path, "wb") as out:
                shutil.copyfileobj(file.file, out)
            await self.queue.put(job)
            return await job.future
        except BaseException:
            job.cleanup()
            raise

    async def _switch_model(self, new_spec: ModelSpec, job_uid: str) -> None:
        """
        热换模型。顺序固定为 unload → create → load，保证内存中最多一个模型。

        - unload 失败：放弃换模，旧引擎保持原状
        - load 失败：按旧 spec 重新加载旧引擎；再失败则标记 degraded
        """
        old_engine, old_spec = self.engine, self._current_model_spec
        old_alias = old_spec.alias if old_spec else "unknown"
        started = time.time()
        self.logger.info(f"[{job_uid}] 🔄 Switching model {old_alias} → {new_spec.alias}")

        try:
            await run_in_threadpool(old_engine.unload_model)
        except Exception as e:
            self.logger.error(f"[{job_uid}] ❌ Could not release {old_alias}: {e}", exc_info=True)
            raise RuntimeError(
                f"Model switch aborted: failed to release '{old_alias}' ({e}). "
                f"The current engine is still loaded and usable."
            ) from e

        new_engine = create_engine_for_spec(new_spec)
        try:
            await run_in_threadpool(load_spec, new_engine, new_spec)
        except Exception as load_err:
            self.logger.error(f"[{job_uid}] ❌ Loading {new_spec.alias} failed: {load_err}", exc_info=True)
            await self._restore(old_engine, old_spec, new_spec, load_err, job_uid)
            raise

        self.engine = new_engine
        self._current_model_spec = new_spec
        self.logger.info(f"[{job_uid}] ✅ Now serving {new_spec.alias} ({time.time() - started:.2f}s)")

    async def _restore(
        self,
        old_engine: TranscriptionEngine,
        old_spec: ModelSpec | None,
        new_spec: ModelSpec,
        load_err: Exception,
        job_uid: str,
    ) -> None:
        old_alias = old_spec.alias if old_spec else "unknown"
        try:
            if old_spec is None:
                raise RuntimeError("previous model spec is unknown")
            await run_in_threadpool(load_spec, old_engine, old_spec)
        except Exception as restore_err:
            self._engine_degraded = True
            self.logger.critical(
                f"[{job_uid}] 💥 Restoring {old_alias} failed too ({restore_err!r}); "
                f"service degraded until restart."
            )
            raise RuntimeError(
                f"Engine unrecoverable: switch to '{new_spec.alias}' failed ({load_err}), "
                f"restore of '{old_alias}' also failed ({restore_err}). "
                f"Service must be restarted."
            ) from restore_err

        self.engine = old_engine
        self._current_model_spec = old_spec
        self.logger.info(f"[{job_uid}] ♻️ Restored {old_alias}")

    def _run_inference(self, job: TranscriptionJob) -> TranscriptionResult:
        """阻塞调用，在线程池中执行"""
        params = self.engine.make_inference_params(**job.params)
        if self.vad is None:
            return self.engine.transcribe_file(str(job.audio_path), params)
        samples = read_wav(job.audio_path, resample=RESAMPLE_AUDIO)
        return transcribe_chunked(self.engine, samples, self.vad, params, chunker=self.chunker)

    async def _process(self, job: TranscriptionJob) -> JobOutput:
        if self._engine_degraded:
            raise RuntimeError(
                "Service is in a degraded state (engine unrecoverable). "
                "Manual restart required."
            )

        if job.model_spec is not None and job.model_spec != self._current_model_spec:
            await self._switch_model(job.model_spec, job.uid)

        started = time.time()
        transcription = await run_in_threadpool(self._run_inference, job)
        self.logger.info(
            f"[{job.uid}] 📝 Done: format={job.output_format}, "
            f"inference={time.time() - started:.2f}s, truncated={transcription.truncated}"
        )
        return render_output(transcription, job.params, time.time() - job.enqueued_at)

    async def _consume_loop(self) -> None:
        """唯一的推理执行者：一次只取一个任务"""
        while self.is_running:
            job = await self.queue.get()
            if job is None:
                break

            self.logger.info(f"[{job.uid}] ▶️ Dequeued after {time.time() - job.enqueued_at:.2f}s")
            try:
                result = await self._process(job)
            except Exception as e:
                self.logger.exception(f"❌ [{job.uid}] Job failed: {e}")
                if not job.future.done():
                    job.future.set_exception(e)
            else:
                if not job.future.done():
                    job.future.set_result(result)
            finally:
                job.cleanup()
                self.queue.task_done()
