"""
Byte-Level BPE Tokenizer

GPT-2 style tokenizer for Llama 3, built from the vocabulary and merge
rules stored in GGUF metadata:
- Llama 3 pretokenization regex (contractions, letters, digit triples, punctuation, whitespace)
- GPT-2 byte <-> printable unicode mapping
- Rank-ordered merge to fixpoint per chunk
"""

import logging
from functools import lru_cache
from typing import Any, Dict, Iterable, List, Mapping, Tuple

import regex

from .errors import TokenizerValidationError

logger = logging.getLogger(__name__)


LLAMA3_PATTERN = (
    r"(?i:'s|'t|'re|'ve|'m|'ll|'d)|[^\r\n\p{L}\p{N}]?\p{L}+|"
    r"\p{N}{1,3}| ?[^\s\p{L}\p{N}]+[\r\n]*|\s*[\r\n]+|\s+(?!\S)|\s+"
)

SPECIAL_TOKEN_START = 128000

TOKENS_KEY = "tokenizer.ggml.tokens"
MERGES_KEY = "tokenizer.ggml.merges"
MODEL_KEY = "tokenizer.ggml.model"


@lru_cache(maxsize=None)
def bytes_to_unicode() -> Dict[int, str]:
    """GPT-2 mapping from every byte value to a printable unicode character.

    Printable ASCII and most of Latin-1 map to themselves; the remaining 68
    byte values map to code points from 256 upward, in byte order.
    """
    bs = (
        list(range(ord("!"), ord("~") + 1))
        + list(range(0xA1, 0xAC + 1))
        + list(range(0xAE, 0xFF + 1))
    )
    cs = list(bs)
    n = 0
    for b in range(256):
        if b not in bs:
            bs.append(b)
            cs.append(256 + n)
            n += 1
    return {b: chr(c) for b, c in zip(bs, cs)}


@lru_cache(maxsize=None)
def unicode_to_bytes() -> Dict[str, int]:
    return {c: b for b, c in bytes_to_unicode().items()}


class Tokenizer:
    """Llama 3 byte-level BPE tokenizer."""

    def __init__(self, vocabulary: List[str], merges: Iterable[str]):
        """Build a tokenizer from a vocabulary and an ordered merge list.

        Args:
            vocabulary: Token strings, index = token id
            merges: Merge rules "<left> <right>", highest priority first
        """
        self.vocabulary = list(vocabulary)
        self.token_to_id: Dict[str, int] = {}
        for i, token in enumerate(self.vocabulary):
            self.token_to_id[token] = i

        self.merges: Dict[Tuple[int, int], int] = {}
        self.merge_ranks: Dict[Tuple[int, int], int] = {}
        for rank, rule in enumerate(merges):
            first, sep, second = rule.partition(" ")
            if not sep:
                continue
            first_id = self.token_to_id.get(first)
            second_id = self.token_to_id.get(second)
            merged_id = self.token_to_id.get(first + second)
            if first_id is None or second_id is None or merged_id is None:
                continue
            pair = (first_id, second_id)
            self.merges[pair] = merged_id
            self.merge_ranks[pair] = rank

        self._special_tokens = {
            self.vocabulary[i]: i for i in range(SPECIAL_TOKEN_START, len(self.vocabulary))
        }
        self._pattern = regex.compile(LLAMA3_PATTERN)
        self._byte_encoder = bytes_to_unicode()
        self._byte_decoder = unicode_to_bytes()

        logger.info(
            f"Built tokenizer: {self.vocab_size} tokens, {len(self.merges)} merges, "
            f"{len(self._special_tokens)} special tokens"
        )

    @classmethod
    def from_metadata(cls, metadata: Mapping[str, Any]) -> "Tokenizer":
        """Build from GGUF metadata.

        Raises:
            TokenizerValidationError: If the tokenizer model is not "gpt2" or
                the vocabulary/merges keys are missing
        """
        model = metadata.get(MODEL_KEY)
        if model != "gpt2":
            raise TokenizerValidationError(f"Expected gpt2 tokenizer model, got: {model}")

        tokens = metadata.get(TOKENS_KEY)
        if not isinstance(tokens, list):
            raise TokenizerValidationError(f"Missing or invalid {TOKENS_KEY}")
        merges = metadata.get(MERGES_KEY)
        if not isinstance(merges, list):
            raise TokenizerValidationError(f"Missing or invalid {MERGES_KEY}")

        return cls([str(t) for t in tokens], [str(m) for m in merges])

    @property
    def vocab_size(self) -> int:
        return len(self.vocabulary)

    @property
    def special_tokens(self) -> Dict[str, int]:
        """Special token string -> id (all ids >= 128000)."""
        return dict(self._special_tokens)

    def is_special_token(self, token_id: int) -> bool:
        return SPECIAL_TOKEN_START <= token_id < self.vocab_size

    def get_id(self, token: str):
        return self.token_to_id.get(token)

    def encode(self, text: str) -> List[int]:
        """Encode text to token IDs. Special token strings are not recognized."""
        ids: List[int] = []
        for match in self._pattern.finditer(text):
            ids.extend(self._encode_chunk(match.group()))
        return ids

    def _encode_chunk(self, chunk: str) -> List[int]:
        ids = []
        for b in chunk.encode("utf-8"):
            token_id = self.token_to_id.get(self._byte_encoder[b])
            if token_id is not None:
                ids.append(token_id)

        while len(ids) >= 2:
            best_pair = None
            best_rank = None
            for pair in zip(ids, ids[1:]):
                rank = self.merge_ranks.get(pair)
                if rank is not None and (best_rank is None or rank < best_rank):
                    best_rank = rank
                    best_pair = pair

            if best_pair is None:
                break

            merged_id = self.merges[best_pair]
            new_ids = []
            i = 0
            while i < len(ids):
                if i < len(ids) - 1 and (ids[i], ids[i + 1]) == best_pair:
                    new_ids.append(merged_id)
                    i += 2
                else:
                    new_ids.append(ids[i])
                    i += 1
            ids = new_ids

        return ids

    def decode(self, ids: Iterable[int]) -> str:
        """Decode token IDs to text. Out-of-range ids are skipped."""
        text = "".join(
            self.vocabulary[i] for i in ids if 0 <= i < self.vocab_size
        )
        out = bytearray()
        for ch in text:
            b = self._byte_decoder.get(ch)
            if b is not None:
                out.append(b)
            else:
                # e.g. the text of special tokens
                out.extend(ch.encode("utf-8"))
        return out.decode("utf-8", errors="replace")

    def decode_token(self, token_id: int) -> str:
        return self.decode([token_id])
