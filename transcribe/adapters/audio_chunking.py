"""
音频切片服务 (Smart Chunking)

用于处理长音频：按约 30 秒切片，并尽量在静音点切分（避免断词）。
核心策略：
1. 目标切点 = 当前起点 + 30s
2. 在目标切点 ±5s 窗口内逐帧跑 VAD，取第一个非语音帧的末尾作为切点
3. 窗口内没有静音则在目标切点硬切
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol

import numpy as np

from transcribe.adapters.audio_io import SAMPLE_RATE
from transcribe.adapters.vad import FRAME_SIZE, VadResult
from transcribe.config import SMART_CHUNK_SECONDS
from transcribe.core.result import TranscriptionResult, merge_results

logger = logging.getLogger(__name__)

SEARCH_WINDOW_SECONDS = 5


class VoiceActivityDetector(Protocol):
    def reset(self) -> None: ...

    def push_frame(self, frame: np.ndarray) -> VadResult: ...


@dataclass(frozen=True)
class AudioChunk:
    """一个切片及其在原音频中的起点（采样点）"""
    start: int
    samples: np.ndarray

    @property
    def offset_seconds(self) -> float:
        return self.start / SAMPLE_RATE


class SmartChunker:
    """
    基于 VAD 的智能切片器

    Args:
        target_seconds: 目标切片时长
        search_seconds: 在目标切点前后搜索静音的范围
    """

    def __init__(
        self,
        target_seconds: int = SMART_CHUNK_SECONDS,
        search_seconds: int = SEARCH_WINDOW_SECONDS,
    ):
        if target_seconds <= 0:
            raise ValueError("target_seconds must be positive")
        self.target_size = target_seconds * SAMPLE_RATE
        self.search_size = search_seconds * SAMPLE_RATE

    def split(self, audio: np.ndarray, vad: VoiceActivityDetector) -> list[AudioChunk]:
        """计算切点，返回连续、不重叠、覆盖全部采样的切片"""
        total = len(audio)
        chunks = []
        start = 0
        while start < total:
            end = self._find_cut(audio, start, vad)
            chunks.append(AudioChunk(start=start, samples=audio[start:end]))
            start = end
        return chunks

    def _find_cut(self, audio: np.ndarray, start: int, vad: VoiceActivityDetector) -> int:
        total = len(audio)
        target_end = start + self.target_size
        if target_end >= total:
            return total

        search_start = max(target_end - self.search_size, start)
        search_end = min(target_end + self.search_size, total)
        # 帧对齐到当前切片起点
        pos = start + ((search_start - start) // FRAME_SIZE) * FRAME_SIZE

        vad.reset()
        while pos + FRAME_SIZE <= search_end:
            if not vad.push_frame(audio[pos:pos + FRAME_SIZE]).is_speech:
                cut = pos + FRAME_SIZE
                logger.debug(f"Found silence at sample {cut}, cutting there")
                return cut
            pos += FRAME_SIZE

        logger.debug(f"No silence found in search window, hard cutting at {self.target_size // SAMPLE_RATE}s")
        return target_end

    def chunk_audio(
        self,
        audio: np.ndarray,
        vad: VoiceActivityDetector,
        callback: Callable[[np.ndarray], str],
        progress_callback: Optional[Callable[[float], Any]] = None,
    ) -> str:
        """
        逐片调用 callback 转写，返回以空格拼接的完整文本。

        progress_callback 在每片完成后收到已处理百分比 (0-100]。
        """
        total = len(audio)
        texts = []
        for chunk in self.split(audio, vad):
            logger.debug(f"Processing chunk: start={chunk.start}, len={len(chunk.samples)} samples")
            text = callback(chunk.samples)
            if text:
                texts.append(text)
            if progress_callback is not None:
                progress_callback((chunk.start + len(chunk.samples)) / total * 100.0)
        return " ".join(texts)


def transcribe_chunked(
    engine,
    audio: np.ndarray,
    vad: VoiceActivityDetector,
    params: Any = None,
    chunker: Optional[SmartChunker] = None,
    progress_callback: Optional[Callable[[float], Any]] = None,
) -> TranscriptionResult:
    """
    用 VAD 切片后逐片转写，并把各片的 segments 按切片起点偏移后合并。
    """
    chunker = chunker or SmartChunker()
    chunks = chunker.split(audio, vad)
    if len(chunks) > 1:
        logger.info(f"✂️ Smart chunking: {len(chunks)} chunks")

    total = len(audio)
    results = []
    for i, chunk in enumerate(chunks):
        logger.info(f"🎙️ Transcribing chunk {i + 1}/{len(chunks)} ({chunk.offset_seconds:.1f}s)...")
        results.append(engine.transcribe(chunk.samples, params))
        if progress_callback is not None:
            progress_callback((chunk.start + len(chunk.samples)) / total * 100.0)

    return merge_results(results, [c.offset_seconds for c in chunks])
