"""
Token id <-> text mapping for the ONNX backends.

- VocabTokenizer: SentencePiece piece list exported as `vocab.txt` (Parakeet).
- HFTokenizer: Hugging Face `tokenizer.json` (Moonshine).

Decoding is a pure function of the id sequence. Ids outside the vocabulary
raise UnknownToken; control tokens are dropped.
"""

import logging
import re
from pathlib import Path

from tokenizers import Tokenizer

from transcribe.core.errors import UnknownToken

logger = logging.getLogger(__name__)

WORD_MARKER = "▁"  # SentencePiece "▁"
BLANK_TOKEN = "<blk>"

# <unk>, <pad>, <blk>, <|endoftext|>, <|en|> ...
_CONTROL_TOKEN = re.compile(r"^<\|?[^<>\s]+\|?>$")


class VocabTokenizer:
    """
    Piece vocabulary read from a `vocab.txt` file with one `<piece> <id>` per line.
    """

    def __init__(self, pieces: dict[int, str]):
        if not pieces:
            raise ValueError("vocabulary is empty")
        self.pieces = pieces
        self.vocab_size = max(pieces) + 1
        self._ids = {piece: idx for idx, piece in sorted(pieces.items())}
        self._max_piece_len = max(len(p) for p in pieces.values())

        if BLANK_TOKEN in self._ids:
            self.blank_id = self._ids[BLANK_TOKEN]
        else:
            # RNNT exports without an explicit blank put it right after the vocabulary
            self.blank_id = self.vocab_size

    @classmethod
    def from_file(cls, path: str | Path) -> "VocabTokenizer":
        pieces: dict[int, str] = {}
        with open(path, encoding="utf-8") as f:
            for line_no, line in enumerate(f, start=1):
                line = line.rstrip("\r\n")
                if not line:
                    continue
                piece, _, idx = line.rpartition(" ")
                if not piece:
                    raise ValueError(f"{path}:{line_no}: expected '<token> <id>', got {line!r}")
                pieces[int(idx)] = piece
        logger.debug(f"Loaded {len(pieces)} pieces from {path}")
        return cls(pieces)

    def is_control(self, token_id: int) -> bool:
        piece = self.pieces.get(token_id)
        return token_id == self.blank_id or piece is None or bool(_CONTROL_TOKEN.match(piece))

    def id_to_piece(self, token_id: int) -> str:
        if token_id not in self.pieces:
            raise UnknownToken(token_id)
        return self.pieces[token_id]

    def decode_piece(self, token_id: int) -> str:
        """Text contributed by a single id (control tokens contribute nothing)."""
        piece = self.id_to_piece(token_id)
        if self.is_control(token_id):
            return ""
        return piece.replace(WORD_MARKER, " ")

    def decode(self, token_ids: list[int]) -> str:
        text = "".join(self.decode_piece(int(t)) for t in token_ids)
        return re.sub(r" +", " ", text).strip()

    def encode(self, text: str) -> list[int]:
        """
        Greedy longest-match segmentation of `text` into pieces.

        Words are prefixed with the word marker, as SentencePiece does.
        Characters with no matching piece raise ValueError.
        """
        ids: list[int] = []
        for word in text.split():
            rest = WORD_MARKER + word
            while rest:
                for size in range(min(len(rest), self._max_piece_len), 0, -1):
                    candidate = rest[:size]
                    idx = self._ids.get(candidate)
                    if idx is not None and not self.is_control(idx):
                        ids.append(idx)
                        rest = rest[size:]
                        break
                else:
                    if rest[0] == WORD_MARKER:
                        # vocabularies without a bare "▁" piece: drop the marker
                        rest = rest[1:]
                        continue
                    raise ValueError(f"no vocabulary piece covers {rest[0]!r}")
        return ids


class HFTokenizer:
    """Wrapper over a `tokenizers.Tokenizer` loaded from `tokenizer.json`."""

    def __init__(self, tokenizer: Tokenizer):
        self.tokenizer = tokenizer
        self.vocab_size = tokenizer.get_vocab_size(with_added_tokens=True)

    @classmethod
    def from_file(cls, path: str | Path) -> "HFTokenizer":
        logger.info(f"Loading tokenizer from {path}...")
        return cls(Tokenizer.from_file(str(path)))

    def token_to_id(self, token: str) -> int | None:
        return self.tokenizer.token_to_id(token)

    def decode(self, token_ids: list[int]) -> str:
        ids = [int(t) for t in token_ids]
        for t in ids:
            if t < 0 or t >= self.vocab_size:
                raise UnknownToken(t)
        # skip_special_tokens drops <s>, </s>, padding
        return self.tokenizer.decode(ids, skip_special_tokens=True).strip()

    def encode(self, text: str) -> list[int]:
        return list(self.tokenizer.encode(text, add_special_tokens=False).ids)
