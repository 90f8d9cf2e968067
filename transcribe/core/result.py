"""
Transcription result types shared by every engine.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any


class TimestampGranularity(str, Enum):
    """How finely timed segments are split (Parakeet)."""

    TOKEN = "token"
    WORD = "word"
    SEGMENT = "segment"

    @classmethod
    def parse(cls, value: "str | TimestampGranularity") -> "TimestampGranularity":
        try:
            return cls(value)
        except ValueError:
            choices = ", ".join(g.value for g in cls)
            raise ValueError(f"timestamp_granularity must be one of: {choices} (got '{value}')") from None


@dataclass(frozen=True)
class TranscriptionSegment:
    """A timed span of the transcript. Times are in seconds."""

    start: float
    end: float
    text: str

    @property
    def start_ms(self) -> int:
        return int(round(self.start * 1000))

    @property
    def end_ms(self) -> int:
        return int(round(self.end * 1000))

    def shifted(self, offset: float) -> "TranscriptionSegment":
        return TranscriptionSegment(start=self.start + offset, end=self.end + offset, text=self.text)


def _ordered(segments: list[TranscriptionSegment]) -> list[TranscriptionSegment]:
    """Sort by start time and clamp overlaps so spans never intersect."""
    ordered: list[TranscriptionSegment] = []
    for seg in sorted(segments, key=lambda s: (s.start, s.end)):
        start, end = seg.start, seg.end
        if ordered and start < ordered[-1].end:
            start = ordered[-1].end
        if end < start:
            end = start
        ordered.append(TranscriptionSegment(start=start, end=end, text=seg.text))
    return ordered


@dataclass
class TranscriptionResult:
    """
    Text plus optional ordered segments.

    truncated is set when a decode loop stopped at its maximum-length bound
    instead of an end-of-sequence token.
    """

    text: str
    segments: list[TranscriptionSegment] | None = None
    truncated: bool = False

    def __post_init__(self) -> None:
        if self.segments is not None:
            self.segments = _ordered(list(self.segments))

    def to_dict(self) -> dict[str, Any]:
        return {
            "text": self.text,
            "segments": (
                [{"start": s.start, "end": s.end, "text": s.text} for s in self.segments]
                if self.segments
                else None
            ),
            "truncated": self.truncated,
        }

    def to_txt(self, with_timestamp: bool = False) -> str:
        """
        Human readable transcript.

        Without segments (or without timestamps requested) this is just the text.
        With timestamps every segment gets its own `[MM:SS] text` line.
        """
        if not with_timestamp or not self.segments:
            return self.text

        lines = []
        for seg in self.segments:
            m, s = divmod(int(seg.start), 60)
            lines.append(f"[{m:02d}:{s:02d}] {seg.text.strip()}")
        return "\n".join(lines)

    def to_srt(self) -> str:
        """
        Standard SRT subtitles.

        1
        00:00:05,000 --> 00:00:20,000
        so what is some of the questions?
        """
        lines = []
        for idx, seg in enumerate(self.segments or [], start=1):
            lines.append(str(idx))
            lines.append(f"{_ms_to_srt_time(seg.start_ms)} --> {_ms_to_srt_time(seg.end_ms)}")
            lines.append(seg.text.strip())
            lines.append("")
        return "\n".join(lines)


def merge_results(results: list[TranscriptionResult], offsets: list[float]) -> TranscriptionResult:
    """
    Merge per-window results into one, shifting segment times by each window's offset.
    """
    if not results:
        return TranscriptionResult(text="", segments=None)

    if len(results) == 1 and offsets[0] == 0.0:
        return results[0]

    texts = []
    segments: list[TranscriptionSegment] = []
    has_segments = False
    for result, offset in zip(results, offsets):
        if result.text:
            texts.append(result.text)
        if result.segments is not None:
            has_segments = True
            segments.extend(seg.shifted(offset) for seg in result.segments)

    return TranscriptionResult(
        text=" ".join(texts),
        segments=segments if has_segments else None,
        truncated=any(r.truncated for r in results),
    )


def _ms_to_srt_time(ms: int) -> str:
    """Milliseconds to SRT time (HH:MM:SS,mmm)."""
    if ms < 0:
        ms = 0
    hours = ms // 3600000
    minutes = (ms % 3600000) // 60000
    seconds = (ms % 60000) // 1000
    milliseconds = ms % 1000
    return f"{hours:02d}:{minutes:02d}:{seconds:02d},{milliseconds:03d}"
