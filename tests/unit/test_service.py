import pytest
import asyncio
import os
from unittest.mock import MagicMock
from io import BytesIO

import numpy as np
from fastapi import UploadFile

from transcribe.adapters.audio_io import encode_wav_bytes
from transcribe.adapters.vad import VadResult
from transcribe.core.errors import InvalidAudio
from transcribe.core.result import TranscriptionResult, TranscriptionSegment
from transcribe.services.transcription import QueueFullError, TranscriptionService


class SilentVad:
    def reset(self):
        pass

    def push_frame(self, frame):
        return VadResult(probability=0.0)


# 使用 pytest-asyncio 处理异步测试
@pytest.mark.asyncio
class TestTranscriptionService:

    @pytest.fixture
    def mock_engine(self):
        """Mock 引擎"""
        engine = MagicMock()
        # transcribe_file 是同步方法，但在 service 中被 run_in_threadpool 调用
        engine.transcribe_file.return_value = TranscriptionResult(
            text="Mocked Transcription",
            segments=[
                TranscriptionSegment(0.0, 0.5, "Mocked"),
                TranscriptionSegment(0.5, 1.0, "Transcription"),
            ],
        )
        return engine

    @pytest.fixture
    def service(self, mock_engine):
        """初始化 Service，队列设小一点方便测试"""
        svc = TranscriptionService(engine=mock_engine, max_queue_size=2)
        return svc

    @pytest.fixture
    def mock_upload_file(self):
        """Mock FastAPI UploadFile"""
        file_content = b"fake audio content"
        file_obj = BytesIO(file_content)
        return UploadFile(file=file_obj, filename="test.wav")

    async def _with_worker(self, service, coro):
        service.is_running = True
        worker_task = asyncio.create_task(service._consume_loop())
        try:
            return await coro
        finally:
            service.is_running = False
            worker_task.cancel()
            try:
                await worker_task
            except asyncio.CancelledError:
                pass

    async def test_submit_success(self, service, mock_upload_file):
        """测试正常提交和处理流程"""
        params = {"language": "de", "output_format": "json"}
        result = await self._with_worker(service, service.submit(mock_upload_file, params))

        assert result["text"] == "Mocked Transcription"
        assert "duration" in result
        assert result["truncated"] is False
        assert result["segments"][1] == {"start": 0.5, "end": 1.0, "text": "Transcription"}

        # 通用参数交给引擎转换成自己的推理参数
        service.engine.make_inference_params.assert_called_once_with(**params)
        service.engine.transcribe_file.assert_called_once()
        _, passed_params = service.engine.transcribe_file.call_args.args
        assert passed_params is service.engine.make_inference_params.return_value

    async def test_submit_txt_format(self, service, mock_upload_file):
        """测试 txt 格式输出"""
        params = {"output_format": "txt"}
        result = await self._with_worker(service, service.submit(mock_upload_file, params))
        assert result == "Mocked Transcription"

    async def test_submit_txt_with_timestamp(self, service, mock_upload_file):
        params = {"output_format": "txt", "with_timestamp": True}
        result = await self._with_worker(service, service.submit(mock_upload_file, params))
        assert result == "[00:00] Mocked\n[00:00] Transcription"

    async def test_submit_srt_format(self, service, mock_upload_file):
        params = {"output_format": "srt"}
        result = await self._with_worker(service, service.submit(mock_upload_file, params))
        assert result.startswith("1\n00:00:00,000 --> 00:00:00,500\nMocked\n")

    async def test_queue_full(self, service, mock_upload_file):
        """测试队列满时的拒绝策略"""
        # 不启动 worker，任务会堆积
        await service.queue.put("job1")
        await service.queue.put("job2")

        with pytest.raises(QueueFullError, match="Queue is full"):
            await service.submit(mock_upload_file, {})

    async def test_temp_file_lifecycle(self, service, mock_upload_file):
        """测试临时文件的创建与删除"""
        captured_path = None

        def side_effect(file_path, params):
            nonlocal captured_path
            captured_path = file_path
            # 此时文件应该存在
            assert os.path.exists(file_path)
            with open(file_path, "rb") as f:
                assert f.read() == b"fake audio content"
            return TranscriptionResult(text="test")

        service.engine.transcribe_file.side_effect = side_effect

        await self._with_worker(service, service.submit(mock_upload_file, {}))

        # 任务完成后，文件应该不存在了
        assert captured_path is not None
        assert captured_path.endswith(".wav")
        assert not os.path.exists(captured_path)

    async def test_worker_error_handling(self, service, mock_upload_file):
        """测试 Worker 遇到异常时的行为"""
        service.engine.transcribe_file.side_effect = InvalidAudio("expected mono audio, got 2 channels")

        service.is_running = True
        worker_task = asyncio.create_task(service._consume_loop())
        try:
            # submit 应该抛出这个异常
            with pytest.raises(InvalidAudio, match="mono"):
                await service.submit(mock_upload_file, {})

            # Worker 应该还活着 (没有 crash)
            assert not worker_task.done()
        finally:
            service.is_running = False
            worker_task.cancel()
            try:
                await worker_task
            except asyncio.CancelledError:
                pass

    async def test_smart_chunking_with_vad(self, mock_engine):
        """配置 VAD 后读取 WAV 并逐片调用 engine.transcribe"""
        mock_engine.transcribe.return_value = TranscriptionResult(text="chunked")
        service = TranscriptionService(engine=mock_engine, max_queue_size=2, vad=SilentVad())
        upload = UploadFile(file=BytesIO(encode_wav_bytes(np.zeros(16000, dtype=np.float32))), filename="a.wav")

        result = await self._with_worker(service, service.submit(upload, {"output_format": "txt"}))

        assert result == "chunked"
        mock_engine.transcribe_file.assert_not_called()
        samples, _ = mock_engine.transcribe.call_args.args
        assert samples.shape == (16000,)

    async def test_stop_worker(self, service):
        service.is_running = True
        worker_task = asyncio.create_task(service._consume_loop())
        await service.stop_worker()
        await asyncio.wait_for(worker_task, timeout=5.0)
        assert service.is_running is False
