"""
Integration tests for model listing and per-request model selection.

Uses FastAPI TestClient with a patched engine factory, so no real model is loaded.
Patching "transcribe.main.create_engine" lets the real lifespan run with a mock
engine, giving us proper app.state setup.
"""

from io import BytesIO
from unittest.mock import MagicMock, PropertyMock, patch

import pytest
from fastapi.testclient import TestClient

from transcribe.core.base_engine import EngineCapabilities, EngineType
from transcribe.core.model_registry import ModelSpec, lookup
from transcribe.core.result import TranscriptionResult
from transcribe.main import app


def _mock_engine(capabilities: EngineCapabilities, text: str) -> MagicMock:
    engine = MagicMock()
    type(engine).capabilities = PropertyMock(return_value=capabilities)
    engine.is_loaded = True
    engine.transcribe_file.return_value = TranscriptionResult(text=text)
    return engine


@pytest.fixture
def mock_create_engine():
    """Patch the engine factory so lifespan runs without loading a real model."""
    with patch("transcribe.main.create_engine") as mock:
        yield mock


@pytest.fixture
def client(mock_create_engine):
    """TestClient whose startup model is moonshine-base (text only)."""
    mock_create_engine.return_value = _mock_engine(EngineCapabilities(), "test result")

    with patch("transcribe.main.configured_spec", return_value=lookup("moonshine-base")):
        with TestClient(app) as c:
            yield c


def _audio_file() -> tuple[str, BytesIO, str]:
    return ("file", BytesIO(b"RIFF\x00\x00\x00\x00WAVEfmt "), "audio/wav")


def test_should_return_model_list_on_get_models(client) -> None:
    response = client.get("/v1/models")

    assert response.status_code == 200
    body = response.json()
    aliases = [m["alias"] for m in body["models"]]
    assert "parakeet-v3-int8" in aliases
    assert "moonshine-tiny" in aliases
    assert "whisper-medium-q4_1" in aliases
    assert "whisperfile-small" in aliases

    whisper = next(m for m in body["models"] if m["alias"] == "whisper-medium-q4_1")
    assert whisper["engine_type"] == "whisper"
    assert whisper["capabilities"]["translate"] is True


def test_should_include_current_model_in_get_models_response(client) -> None:
    body = client.get("/v1/models").json()

    assert body["current"] == "moonshine-base"


def test_should_switch_when_valid_alias_provided(client) -> None:
    new_engine = _mock_engine(
        EngineCapabilities(timestamp=True, language_select=True, language_detect=True, translate=True),
        "switched",
    )

    with patch("transcribe.services.transcription.create_engine_for_spec", return_value=new_engine):
        response = client.post(
            "/v1/audio/transcriptions",
            data={"model": "whisper-medium-q4_1", "language": "de", "translate": "true"},
            files={"file": _audio_file()},
        )

    assert response.status_code == 200
    body = response.json()
    assert body["text"] == "switched"
    assert body["model"] == "whisper-medium-q4_1"
    new_engine.load_model.assert_called_once_with(lookup("whisper-medium-q4_1").resolved_path)
    new_engine.make_inference_params.assert_called_once()
    assert new_engine.make_inference_params.call_args.kwargs["translate"] is True

    current = client.get("/v1/models/current").json()
    assert current["model_alias"] == "whisper-medium-q4_1"
    assert current["engine_type"] == "whisper"


def test_should_return_400_when_unknown_model_provided(client) -> None:
    response = client.post(
        "/v1/audio/transcriptions",
        data={"model": "not-a-real-model"},
        files={"file": _audio_file()},
    )

    assert response.status_code == 400
    assert "Unknown model" in response.json()["detail"]


def test_should_use_current_model_when_model_field_omitted(client) -> None:
    response = client.post("/v1/audio/transcriptions", files={"file": _audio_file()})

    assert response.status_code == 200
    assert response.json()["model"] == "moonshine-base"


def test_should_use_current_model_when_whisper_1_provided(client) -> None:
    """whisper-1 is OpenAI's default placeholder and means 'use current model'."""
    with patch("transcribe.services.transcription.create_engine_for_spec") as factory:
        response = client.post(
            "/v1/audio/transcriptions",
            data={"model": "whisper-1"},
            files={"file": _audio_file()},
        )

    assert response.status_code == 200
    factory.assert_not_called()


def test_should_validate_against_requested_model_capabilities(client) -> None:
    """The current engine has no timestamps, but the requested parakeet model does."""
    new_engine = _mock_engine(EngineCapabilities(timestamp=True, language_detect=True), "with timestamps")

    with patch("transcribe.services.transcription.create_engine_for_spec", return_value=new_engine):
        response = client.post(
            "/v1/audio/transcriptions",
            data={"model": "parakeet-v3-int8", "output_format": "srt"},
            files={"file": _audio_file()},
        )

    assert response.status_code == 200


def test_should_return_400_when_srt_requested_with_no_timestamp_model(client) -> None:
    no_ts_spec = ModelSpec(
        alias="no-ts-model",
        model_path="/data/moonshine-custom",
        engine_type=EngineType.MOONSHINE,
        description="Test model with no timestamp support.",
        capabilities=EngineCapabilities(timestamp=False),
    )

    with patch("transcribe.api.routes.lookup", return_value=no_ts_spec):
        response = client.post(
            "/v1/audio/transcriptions",
            data={"model": "no-ts-model", "output_format": "srt"},
            files={"file": _audio_file()},
        )

    assert response.status_code == 400
    assert "timestamp" in response.json()["detail"].lower()


def test_should_return_400_when_with_timestamp_requested_with_no_timestamp_model(client) -> None:
    response = client.post(
        "/v1/audio/transcriptions",
        data={"model": "moonshine-tiny", "with_timestamp": "true"},
        files={"file": _audio_file()},
    )

    assert response.status_code == 400
    assert "with_timestamp" in response.json()["detail"].lower()


def test_get_current_model_includes_alias(client) -> None:
    response = client.get("/v1/models/current")

    assert response.status_code == 200
    body = response.json()
    assert body["model_alias"] == "moonshine-base"
    assert body["capabilities"]["timestamp"] is False
