from __future__ import annotations

import hashlib
import re
from abc import ABC, abstractmethod
from typing import Sequence

import numpy as np


# Keeps rule identifiers such as "12b" or "3-second" as single tokens.
TOKEN_PATTERN = re.compile(r"[a-z0-9]+(?:[-'][a-z0-9]+)*")
STOPWORDS = frozenset(
    {
        "a",
        "an",
        "and",
        "are",
        "as",
        "at",
        "be",
        "by",
        "for",
        "from",
        "in",
        "is",
        "it",
        "of",
        "on",
        "or",
        "that",
        "the",
        "this",
        "to",
        "with",
        "include",
        "including",
        "regarding",
        "specific",
    }
)


def _l2_normalize(matrix: np.ndarray) -> np.ndarray:
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    return matrix / norms


def tokenize(text: str) -> list[str]:
    return [token for token in TOKEN_PATTERN.findall(text.lower()) if token not in STOPWORDS]


class BaseEmbedder(ABC):
    model_name: str

    @property
    @abstractmethod
    def embedding_dim(self) -> int:
        raise NotImplementedError

    @abstractmethod
    def embed(self, texts: Sequence[str]) -> np.ndarray:
        raise NotImplementedError


class HashingEmbedder(BaseEmbedder):
    """
    Dependency-free lexical embedder for rulebook passages.

    Unigrams and adjacent-word bigrams are hashed into signed buckets, so
    phrases like "illegal screen" score higher than the two words apart.
    """

    def __init__(self, dim: int = 512, bigram_weight: float = 0.5) -> None:
        if dim <= 0:
            raise ValueError("dim must be > 0")
        self.model_name = f"hashing-bigram-{dim}"
        self._dim = dim
        self._bigram_weight = float(bigram_weight)

    @property
    def embedding_dim(self) -> int:
        return self._dim

    def _bucket(self, feature: str) -> tuple[int, float]:
        digest = hashlib.blake2b(feature.encode("utf-8"), digest_size=8).digest()
        value = int.from_bytes(digest, byteorder="big", signed=False)
        sign = 1.0 if value & 1 else -1.0
        return (value >> 1) % self._dim, sign

    def _embed_text(self, text: str) -> np.ndarray:
        vec = np.zeros(self._dim, dtype=np.float32)
        tokens = tokenize(text)
        for token in tokens:
            bucket, sign = self._bucket(token)
            vec[bucket] += sign
        for left, right in zip(tokens, tokens[1:]):
            bucket, sign = self._bucket(f"{left} {right}")
            vec[bucket] += sign * self._bigram_weight
        return vec

    def embed(self, texts: Sequence[str]) -> np.ndarray:
        if not texts:
            return np.zeros((0, self._dim), dtype=np.float32)
        mat = np.vstack([self._embed_text(text) for text in texts]).astype(np.float32)
        return _l2_normalize(mat)


class SentenceTransformerEmbedder(BaseEmbedder):
    def __init__(self, model_name: str = "sentence-transformers/all-MiniLM-L6-v2") -> None:
        try:
            from sentence_transformers import SentenceTransformer
        except ImportError as exc:
            raise ImportError(
                "sentence-transformers is required for transformer embeddings. "
                "Install with: pip install 'foul-review[semantic]'"
            ) from exc

        self.model_name = model_name
        self._model = SentenceTransformer(model_name)
        self._dim = int(self._model.get_sentence_embedding_dimension())

    @property
    def embedding_dim(self) -> int:
        return self._dim

    def embed(self, texts: Sequence[str]) -> np.ndarray:
        embeddings = self._model.encode(
            list(texts),
            convert_to_numpy=True,
            normalize_embeddings=True,
            show_progress_bar=False,
        )
        return np.asarray(embeddings, dtype=np.float32)


EMBEDDER_KINDS = ("hashing", "sentence-transformer")


def build_embedder(kind: str, model: str | None = None) -> BaseEmbedder:
    normalized = kind.strip().lower()
    if normalized == "hashing":
        return HashingEmbedder()
    if normalized == "sentence-transformer":
        return SentenceTransformerEmbedder(model_name=model or "sentence-transformers/all-MiniLM-L6-v2")
    raise ValueError(f"Unsupported embedder: {kind}")
