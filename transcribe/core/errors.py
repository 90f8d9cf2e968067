"""
Typed failures raised by the transcription engines.

Every engine operation either returns a result or raises one of these.
Truncation at a maximum-length bound is not an error; it is reported on the
TranscriptionResult instead.
"""

from collections.abc import Iterable
from pathlib import Path


class TranscriptionError(Exception):
    """Base class for all engine failures."""


class ModelFilesMissing(TranscriptionError):
    """A model path lacks one or more files required by the engine variant."""

    def __init__(self, paths: Iterable[str | Path]):
        self.paths = [Path(p) for p in paths]
        names = ", ".join(str(p) for p in self.paths)
        super().__init__(f"Model files missing: {names}")


class InvalidAudio(TranscriptionError, ValueError):
    """The audio buffer or WAV file violates the required input format."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Invalid audio: {reason}")


class NotLoaded(TranscriptionError, RuntimeError):
    """An operation needs a loaded model but none is loaded (or the server stopped)."""

    def __init__(self, message: str = "Model not loaded! Call engine.load_model() first."):
        super().__init__(message)


class UnknownToken(TranscriptionError, KeyError):
    """A token id outside the tokenizer's vocabulary."""

    def __init__(self, token_id: int):
        self.token_id = token_id
        super().__init__(token_id)

    def __str__(self) -> str:
        return f"Unknown token id: {self.token_id}"


class InferenceFailure(TranscriptionError):
    """The tensor runtime failed or produced non-finite values."""

    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(f"Inference failed: {detail}")


class ServerStartTimeout(TranscriptionError):
    """The inference server did not become ready before the health-check attempts ran out."""


class ServerCrashed(TranscriptionError):
    """The inference server exited while a request was in flight."""


class HealthCheckTimeout(TranscriptionError, TimeoutError):
    """A single health-check probe did not answer in time."""
