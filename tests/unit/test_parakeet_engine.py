import numpy as np
import pytest
from types import SimpleNamespace
from unittest.mock import patch

from transcribe.core.errors import InvalidAudio, ModelFilesMissing, NotLoaded
from transcribe.core.parakeet_engine import (
    ParakeetEngine,
    ParakeetInferenceParams,
    ParakeetModelParams,
    Quantization,
    TimestampGranularity,
)

VOCAB_LINES = ["<unk> 0", "▁hello 1", "▁wor 2", "ld 3", "▁ 4", ". 5", "<blk> 6"]
BLANK = 6
HIDDEN = 4
STATE_SHAPE = [2, "batch", 8]


class FakePreprocessor:
    """nemo128.onnx: 10ms hop"""

    def run(self, names, feeds):
        n = int(feeds["waveforms_lens"][0])
        frames = n // 160
        return [np.zeros((1, 128, frames), dtype=np.float32), np.array([frames], dtype=np.int64)]


class FakeEncoder:
    """8x subsampling; 每帧第 0 维写入帧号，方便 decoder 识别"""

    def run(self, names, feeds):
        frames = int(feeds["length"][0]) // 8
        encoded = np.zeros((1, HIDDEN, frames + 2), dtype=np.float32)  # padded past length
        encoded[0, 0, :] = np.arange(frames + 2)
        return [encoded, np.array([frames], dtype=np.int64)]


class FakeDecoderJoint:
    """plan: {(frame, last_token): token}，未列出的组合输出 blank"""

    def __init__(self, plan=None):
        self.plan = plan or {}
        self.calls = []

    def get_inputs(self):
        return [
            SimpleNamespace(name="input_states_1", shape=STATE_SHAPE),
            SimpleNamespace(name="input_states_2", shape=STATE_SHAPE),
        ]

    def run(self, names, feeds):
        frame = int(feeds["encoder_outputs"][0, 0, 0])
        token = int(feeds["targets"][0, 0])
        assert feeds["targets"].dtype == np.int32
        assert feeds["input_states_1"].shape == (2, 1, 8)
        self.calls.append((frame, token))

        logits = np.full((1, 1, 1, len(VOCAB_LINES)), -10.0, dtype=np.float32)
        logits[..., self.plan.get((frame, token), BLANK)] = 10.0
        return [logits, feeds["input_states_1"], feeds["input_states_2"]]


# "hello world." → ▁hello@1 ▁wor@2 ld@3 .@3
HELLO_PLAN = {(1, BLANK): 1, (2, 1): 2, (3, 2): 3, (3, 3): 5}


def make_model_dir(path, int8=False, vocab=True):
    path.mkdir(parents=True, exist_ok=True)
    suffix = ".int8.onnx" if int8 else ".onnx"
    for name in (f"encoder-model{suffix}", f"decoder_joint-model{suffix}", "nemo128.onnx"):
        (path / name).write_bytes(b"onnx")
    if vocab:
        (path / "vocab.txt").write_text("\n".join(VOCAB_LINES) + "\n", encoding="utf-8")
    return path


class TestParakeetEngine:
    """
    测试 transcribe/core/parakeet_engine.py
    重点：Mock 掉 create_session，用脚本化的假 session 驱动 TDT 解码
    """

    @pytest.fixture
    def decoder(self):
        return FakeDecoderJoint(HELLO_PLAN)

    @pytest.fixture
    def mock_sessions(self, decoder):
        """按文件名返回假 session"""

        def fake_create(path, *args, **kwargs):
            name = str(path).rsplit("/", 1)[-1]
            if name == "nemo128.onnx":
                return FakePreprocessor()
            if name.startswith("encoder-model"):
                return FakeEncoder()
            return decoder

        with patch("transcribe.core.parakeet_engine.create_session", side_effect=fake_create) as mock:
            yield mock

    @pytest.fixture
    def engine(self, tmp_path, mock_sessions):
        engine = ParakeetEngine()
        engine.load_model(make_model_dir(tmp_path / "parakeet"))
        return engine

    def test_initialization(self):
        """测试引擎初始化"""
        engine = ParakeetEngine()
        assert engine.is_loaded is False
        assert engine.capabilities.timestamp is True
        assert engine.capabilities.translate is False

    def test_transcribe_not_loaded(self):
        """测试未加载模型直接推理应报错"""
        engine = ParakeetEngine()
        with pytest.raises(NotLoaded, match="Model not loaded"):
            engine.transcribe(np.zeros(16000, dtype=np.float32))

    def test_silence(self, engine, decoder):
        decoder.plan = {}

        result = engine.transcribe(np.zeros(16000, dtype=np.float32))
        assert result.text == ""
        assert result.segments == []
        assert result.truncated is False

    def test_scripted_transcript(self, engine):
        """测试 TDT 解码得到文本与句子级时间戳"""
        result = engine.transcribe(np.zeros(16000, dtype=np.float32))

        assert result.text == "hello world."
        assert len(result.segments) == 1
        seg = result.segments[0]
        assert seg.text == "hello world."
        assert seg.start == pytest.approx(0.08)
        assert seg.end == pytest.approx(0.32)

    def test_word_granularity(self, engine):
        params = engine.make_inference_params(timestamp_granularity="word")
        result = engine.transcribe(np.zeros(16000, dtype=np.float32), params)

        assert [s.text for s in result.segments] == ["hello", "world."]
        assert result.segments[0].start == pytest.approx(0.08)
        assert result.segments[0].end == pytest.approx(0.16)
        assert result.segments[1].start == pytest.approx(0.16)

    def test_token_granularity(self, engine):
        result = engine.transcribe(
            np.zeros(16000, dtype=np.float32),
            ParakeetInferenceParams(timestamp_granularity=TimestampGranularity.TOKEN),
        )
        assert [s.text for s in result.segments] == ["hello", "wor", "ld", "."]

    def test_invalid_granularity_lists_choices(self, engine):
        with pytest.raises(ValueError, match="token, word, segment"):
            engine.make_inference_params(timestamp_granularity="sentence")

    def test_deterministic(self, engine):
        audio = np.random.default_rng(0).uniform(-0.1, 0.1, 16000).astype(np.float32)
        first = engine.transcribe(audio)
        second = engine.transcribe(audio)
        assert first == second

    def test_decoder_called_per_frame(self, engine, decoder):
        engine.transcribe(np.zeros(16000, dtype=np.float32))
        # 16000 samples → 100 features → 12 encoder frames (padding beyond length ignored)
        assert max(frame for frame, _ in decoder.calls) == 11

    def test_invalid_audio(self, engine):
        with pytest.raises(InvalidAudio):
            engine.transcribe(np.zeros(0, dtype=np.float32))
        with pytest.raises(InvalidAudio):
            engine.transcribe(np.full(100, np.nan, dtype=np.float32))

    def test_missing_vocab(self, tmp_path, mock_sessions):
        """缺少 vocab.txt 报 ModelFilesMissing；补齐后可以正常加载"""
        model_dir = make_model_dir(tmp_path / "parakeet", vocab=False)
        engine = ParakeetEngine()

        with pytest.raises(ModelFilesMissing) as exc_info:
            engine.load_model(model_dir)
        assert exc_info.value.paths == [model_dir / "vocab.txt"]
        assert engine.is_loaded is False
        mock_sessions.assert_not_called()

        make_model_dir(model_dir)
        engine.load_model(model_dir)
        assert engine.is_loaded is True

    def test_failed_load_keeps_previous_model(self, engine, tmp_path):
        previous = engine.model_path
        with pytest.raises(ModelFilesMissing):
            engine.load_model(tmp_path / "does-not-exist")
        assert engine.is_loaded is True
        assert engine.model_path == previous

    def test_int8_detected(self, tmp_path, mock_sessions):
        engine = ParakeetEngine()
        engine.load_model(make_model_dir(tmp_path / "int8", int8=True))
        assert engine.model_params.quantization == Quantization.INT8

        opened = [str(c.args[0]).rsplit("/", 1)[-1] for c in mock_sessions.call_args_list]
        assert "encoder-model.int8.onnx" in opened

    def test_explicit_params_from_strings(self, tmp_path, mock_sessions):
        engine = ParakeetEngine()
        engine.load_model_with_params(
            make_model_dir(tmp_path / "int8", int8=True), ParakeetModelParams(quantization="int8")
        )
        assert engine.model_params.quantization == Quantization.INT8

    def test_long_audio_windows(self, tmp_path, mock_sessions, decoder):
        """超过 max_window_seconds 的音频按窗口转写并合并时间偏移"""
        engine = ParakeetEngine()
        engine.load_model_with_params(
            make_model_dir(tmp_path / "parakeet"), ParakeetModelParams(max_window_seconds=1.0)
        )
        result = engine.transcribe(np.zeros(32000, dtype=np.float32))

        assert result.text == "hello world. hello world."
        assert [round(s.start, 2) for s in result.segments] == [0.08, 1.08]

    def test_unload(self, engine):
        engine.unload_model()
        assert engine.is_loaded is False
        assert engine.model_path is None
        with pytest.raises(NotLoaded):
            engine.transcribe(np.zeros(16000, dtype=np.float32))
