"""
Decode loops shared by the ONNX engines.

The loops only see a `step` callable, so they are independent of the
session layout of a particular export:

- transducer_decode: frame-synchronous RNNT/TDT search (Parakeet)
- greedy_decode / beam_search: autoregressive search with a per-hypothesis
  state, typically a KVCache (Moonshine)

Every loop is bounded: the transducer by the number of encoder frames and the
per-frame emission cap, the autoregressive loops by `max_length`.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable

import numpy as np

from transcribe.core.errors import InferenceFailure
from transcribe.core.onnx_session import ensure_finite

logger = logging.getLogger(__name__)

DEFAULT_MAX_SYMBOLS_PER_STEP = 10

# step(last_token, state) -> (logits over vocab, next state)
StepFn = Callable[[int, Any], tuple[np.ndarray, Any]]
# step(encoder_frame, last_token, state) -> (joint logits, next state)
TransducerStepFn = Callable[[np.ndarray, int, Any], tuple[np.ndarray, Any]]


def log_softmax(logits: np.ndarray) -> np.ndarray:
    x = np.asarray(logits, dtype=np.float64).reshape(-1)
    if not np.all(np.isfinite(x)):
        raise InferenceFailure("decoder produced non-finite logits")
    shifted = x - x.max()
    return shifted - np.log(np.exp(shifted).sum())


def _last_logits(logits: np.ndarray, what: str) -> np.ndarray:
    """Reduce [1, seq, vocab] / [1, vocab] / [vocab] logits to the last position."""
    arr = np.asarray(logits)
    while arr.ndim > 1:
        arr = arr[-1] if arr.ndim == 2 else arr[0]
    ensure_finite(arr, what)
    return arr


@dataclass
class DecodeOutput:
    tokens: list[int]
    score: float = 0.0
    truncated: bool = False


@dataclass
class TransducerOutput:
    tokens: list[int] = field(default_factory=list)
    # encoder frame index at which each token was emitted
    frames: list[int] = field(default_factory=list)
    truncated: bool = False


def transducer_decode(
    encoder_out: np.ndarray,
    step: TransducerStepFn,
    blank_id: int,
    num_tokens: int,
    state: Any,
    max_symbols_per_step: int = DEFAULT_MAX_SYMBOLS_PER_STEP,
) -> TransducerOutput:
    """
    Greedy transducer search over encoder frames [T, D].

    Logits past `num_tokens` are TDT duration logits; when present the argmax
    duration (in frames) drives the time axis. The prediction network state is
    only replaced after a non-blank emission. Hitting `max_symbols_per_step`
    emissions on one frame forces the frame forward and marks the output
    truncated.
    """
    if max_symbols_per_step < 1:
        raise ValueError("max_symbols_per_step must be >= 1")

    out = TransducerOutput()
    num_frames = encoder_out.shape[0]
    last_token = blank_id
    t = 0
    emitted = 0

    while t < num_frames:
        logits, next_state = step(encoder_out[t], last_token, state)
        logits = _last_logits(logits, "decoder_joint")

        token = int(np.argmax(logits[:num_tokens]))
        duration = int(np.argmax(logits[num_tokens:])) if logits.shape[0] > num_tokens else 0

        if token != blank_id:
            out.tokens.append(token)
            out.frames.append(t)
            last_token = token
            state = next_state
            emitted += 1

        if duration > 0:
            t += duration
            emitted = 0
        elif token == blank_id:
            t += 1
            emitted = 0
        elif emitted >= max_symbols_per_step:
            out.truncated = True
            t += 1
            emitted = 0

    return out


def greedy_decode(
    step: StepFn,
    start_token: int,
    eos_token: int,
    max_length: int,
    state: Any,
) -> DecodeOutput:
    """Argmax decoding (ties go to the lowest id) until EOS or `max_length` tokens."""
    if max_length < 1:
        raise ValueError("max_length must be >= 1")

    tokens: list[int] = []
    score = 0.0
    last_token = start_token
    for _ in range(max_length):
        logits, state = step(last_token, state)
        logprobs = log_softmax(_last_logits(logits, "decoder"))
        token = int(np.argmax(logprobs))
        score += float(logprobs[token])
        if token == eos_token:
            return DecodeOutput(tokens=tokens, score=score)
        tokens.append(token)
        last_token = token

    return DecodeOutput(tokens=tokens, score=score, truncated=True)


@dataclass
class _Hypothesis:
    tokens: tuple[int, ...]
    score: float
    state: Any

    @property
    def last_token(self) -> int | None:
        return self.tokens[-1] if self.tokens else None


def beam_search(
    step: StepFn,
    start_token: int,
    eos_token: int,
    max_length: int,
    state: Any,
    beam_size: int,
) -> DecodeOutput:
    """
    Beam search ranked by cumulative log-probability.

    After each step the candidates are pruned to `beam_size`. Equal scores are
    ordered by the parent hypothesis (earlier registered first), then by the
    lower token id. A hypothesis finishes when it emits EOS; the best finished
    one wins. If none finished within `max_length`, the best live hypothesis is
    returned with `truncated=True`.
    """
    if beam_size < 1:
        raise ValueError("beam_size must be >= 1")
    if max_length < 1:
        raise ValueError("max_length must be >= 1")

    beams = [_Hypothesis(tokens=(), score=0.0, state=state)]
    finished: list[_Hypothesis] = []

    for _ in range(max_length):
        candidates = []
        for order, hyp in enumerate(beams):
            last = hyp.last_token
            logits, next_state = step(start_token if last is None else last, hyp.state)
            logprobs = log_softmax(_last_logits(logits, "decoder"))
            # stable sort keeps the lower id first among equal log-probs
            for token in np.argsort(-logprobs, kind="stable")[:beam_size]:
                token = int(token)
                candidates.append((hyp.score + float(logprobs[token]), order, token, hyp, next_state))

        candidates.sort(key=lambda c: (-c[0], c[1], c[2]))

        beams = []
        for score, _, token, parent, next_state in candidates[:beam_size]:
            if token == eos_token:
                finished.append(_Hypothesis(tokens=parent.tokens, score=score, state=None))
            else:
                beams.append(_Hypothesis(tokens=parent.tokens + (token,), score=score, state=next_state))

        if not beams:
            break
        # log-probs are <= 0: live beams can only lose score from here
        if finished and max(h.score for h in finished) >= beams[0].score:
            break

    if finished:
        best = max(finished, key=lambda h: h.score)
        return DecodeOutput(tokens=list(best.tokens), score=best.score)

    best = beams[0]
    return DecodeOutput(tokens=list(best.tokens), score=best.score, truncated=True)


@dataclass(frozen=True)
class KVCache:
    """
    Attention cache of a merged seq2seq decoder export.

    `decoder` holds the self-attention keys/values that grow by one position
    per step; `encoder` holds the cross-attention keys/values computed on the
    first step and reused afterwards. Arrays are read-only; `advance` returns a
    new cache.
    """

    num_layers: int
    decoder: dict[str, np.ndarray]
    encoder: dict[str, np.ndarray]
    length: int = 0

    @classmethod
    def empty(cls, num_layers: int, num_heads: int, head_dim: int) -> "KVCache":
        zeros = np.zeros((1, num_heads, 0, head_dim), dtype=np.float32)
        zeros.flags.writeable = False
        decoder = {}
        encoder = {}
        for i in range(num_layers):
            for kind in ("key", "value"):
                decoder[f"{i}.decoder.{kind}"] = zeros
                encoder[f"{i}.encoder.{kind}"] = zeros
        return cls(num_layers=num_layers, decoder=decoder, encoder=encoder)

    @property
    def use_cache(self) -> bool:
        return self.length > 0

    def feeds(self) -> dict[str, np.ndarray]:
        return {f"past_key_values.{name}": value for name, value in {**self.decoder, **self.encoder}.items()}

    @staticmethod
    def output_names(num_layers: int) -> list[str]:
        names = []
        for i in range(num_layers):
            for part in ("decoder", "encoder"):
                for kind in ("key", "value"):
                    names.append(f"present.{i}.{part}.{kind}")
        return names

    def advance(self, outputs: dict[str, np.ndarray], steps: int = 1) -> "KVCache":
        """Adopt the `present.*` outputs of one decoder call."""
        decoder = {}
        for name, old in self.decoder.items():
            new = np.array(outputs[f"present.{name}"], dtype=np.float32)
            if new.shape[2] != old.shape[2] + steps:
                raise InferenceFailure(
                    f"KV cache {name}: expected {old.shape[2] + steps} positions, got {new.shape[2]}"
                )
            new.flags.writeable = False
            decoder[name] = new

        if self.use_cache:
            encoder = self.encoder
        else:
            encoder = {}
            for name in self.encoder:
                value = np.array(outputs[f"present.{name}"], dtype=np.float32)
                value.flags.writeable = False
                encoder[name] = value

        return KVCache(
            num_layers=self.num_layers,
            decoder=decoder,
            encoder=encoder,
            length=self.length + steps,
        )
