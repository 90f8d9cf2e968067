"""
Whisperfile engine: proxies transcription to a local whisperfile server.

Loading a model spawns `whisperfile --server -m <model>`; unloading (or
dropping the engine) stops it. Audio is sent as a 16kHz mono WAV upload to
the server's `/inference` endpoint.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import numpy as np
import requests

from transcribe.adapters.audio_io import encode_wav_bytes
from transcribe.config import (
    HEALTH_CHECK_INTERVAL_SEC,
    WHISPERFILE_BINARY,
    WHISPERFILE_HOST,
    WHISPERFILE_PORT,
    WHISPERFILE_STARTUP_TIMEOUT_SEC,
)
from transcribe.core.base_engine import ENGINE_CAPABILITIES, EngineType, TranscriptionEngine
from transcribe.core.errors import InferenceFailure
from transcribe.core.result import TranscriptionResult, TranscriptionSegment
from transcribe.core.supervisor import ServerConfig, ServerState, ServerSupervisor

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WhisperfileModelParams:
    host: str = WHISPERFILE_HOST
    # 0 = pick a free port
    port: int = WHISPERFILE_PORT
    startup_timeout_secs: float = WHISPERFILE_STARTUP_TIMEOUT_SEC
    health_check_interval_secs: float = HEALTH_CHECK_INTERVAL_SEC


@dataclass
class WhisperfileInferenceParams:
    language: str | None = None
    translate: bool = False
    temperature: float | None = None
    response_format: str = "verbose_json"


class WhisperfileEngine(TranscriptionEngine[WhisperfileModelParams, WhisperfileInferenceParams, ServerSupervisor]):
    engine_type = EngineType.WHISPERFILE
    model_params_type = WhisperfileModelParams
    inference_params_type = WhisperfileInferenceParams
    CAPABILITIES = ENGINE_CAPABILITIES[EngineType.WHISPERFILE]

    def __init__(self, binary_path: str | Path = WHISPERFILE_BINARY):
        super().__init__()
        self.binary_path = str(binary_path)

    @property
    def is_loaded(self) -> bool:
        return self._handle is not None and self._handle.state != ServerState.STOPPED

    @property
    def server_state(self) -> ServerState:
        return self._handle.state if self._handle else ServerState.NOT_STARTED

    def missing_files(self, model_path: Path, params: WhisperfileModelParams) -> list[Path]:
        return [] if model_path.is_file() else [model_path]

    def _load(self, model_path: Path, params: WhisperfileModelParams) -> ServerSupervisor:
        supervisor = ServerSupervisor(
            ServerConfig(
                binary=self.binary_path,
                model_path=model_path,
                host=params.host,
                port=params.port,
                startup_timeout_secs=params.startup_timeout_secs,
                health_check_interval_secs=params.health_check_interval_secs,
            )
        )
        supervisor.start()
        return supervisor

    def _release(self, supervisor: ServerSupervisor) -> None:
        supervisor.stop()

    def _transcribe(
        self,
        supervisor: ServerSupervisor,
        samples: np.ndarray,
        params: WhisperfileInferenceParams,
    ) -> TranscriptionResult:
        wav = encode_wav_bytes(samples)
        try:
            payload = supervisor.request(lambda base_url: self._post(supervisor.http, base_url, wav, params))
        except requests.RequestException as e:
            raise InferenceFailure(f"request to whisperfile server failed: {e}") from e
        return _parse_response(payload)

    def _post(
        self,
        http: requests.Session,
        base_url: str,
        wav: bytes,
        params: WhisperfileInferenceParams,
    ) -> Any:
        data = {"response_format": params.response_format}
        if params.language:
            data["language"] = params.language
        if params.translate:
            data["translate"] = "true"
        if params.temperature is not None:
            data["temperature"] = str(params.temperature)

        response = http.post(
            f"{base_url}/inference",
            files={"file": ("audio.wav", wav, "audio/wav")},
            data=data,
        )
        if not response.ok:
            raise InferenceFailure(f"whisperfile server error {response.status_code}: {response.text}")
        try:
            return response.json()
        except ValueError as e:
            raise InferenceFailure(f"whisperfile server returned invalid JSON: {e}") from e

    def __del__(self):
        supervisor = getattr(self, "_handle", None)
        if supervisor is not None:
            supervisor.stop()


def _parse_response(payload: Any) -> TranscriptionResult:
    """
    {"text": "...", "segments": [{"start": 0.0, "end": 2.5, "text": "..."}]}
    """
    if not isinstance(payload, dict) or "text" not in payload:
        raise InferenceFailure(f"unexpected whisperfile response: {payload!r}")

    segments = None
    if payload.get("segments") is not None:
        segments = [
            TranscriptionSegment(
                start=float(seg.get("start", 0.0)),
                end=float(seg.get("end", 0.0)),
                text=str(seg.get("text", "")).strip(),
            )
            for seg in payload["segments"]
        ]
    return TranscriptionResult(text=str(payload["text"]).strip(), segments=segments)
