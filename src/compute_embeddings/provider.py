"""Embedding providers wrapping sentence-transformers models."""

from __future__ import annotations

import logging
import re
from typing import Protocol

import numpy as np
from sentence_transformers import SentenceTransformer

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "sentence-transformers/all-MiniLM-L6-v2"


class TextTooLongError(ValueError):
    """The input text exceeds what the provider accepts."""


class EmbeddingProvider(Protocol):
    model_name: str

    def embed(self, text: str) -> list[float]:
        """Embed one text. Raises on failure (MemoryError, TextTooLongError, ...)."""
        ...


def _split_sentences(text: str) -> list[str]:
    """Split text into sentences with a simple punctuation heuristic."""
    if not text:
        return []
    matches = re.findall(r"[^.!?]+[.!?]+|[^.!?]+$", text)
    return [m.strip() for m in matches if m.strip()]


def truncate_to_word_limit(text: str, word_limit: int | None) -> str:
    """Keep whole sentences while the running word count stays within word_limit.

    If even the first sentence is too long, its first word_limit words are kept.
    """
    if not word_limit:
        return text
    selected = []
    word_count = 0
    for sentence in _split_sentences(text):
        words = sentence.split()
        if not words:
            continue
        if word_count + len(words) > word_limit:
            break
        selected.append(sentence)
        word_count += len(words)
    if not selected:
        return " ".join(text.split()[:word_limit])
    return " ".join(selected)


class SentenceTransformerProvider:
    """EmbeddingProvider backed by a SentenceTransformer model.

    The model is loaded by load() (or lazily on first embed) and released by
    close(); nothing is shared between instances.

    Args:
        model_name: Name of the sentence-transformers model to use
        device: Torch device, or None to let sentence-transformers choose
        word_limit: Maximum number of words to embed (None for no limit)
        max_text_chars: Inputs longer than this raise TextTooLongError
    """

    def __init__(
        self,
        model_name: str = DEFAULT_MODEL,
        device: str | None = None,
        word_limit: int | None = 256,
        max_text_chars: int | None = 200_000,
    ):
        self.model_name = model_name
        self.device = device
        self.word_limit = word_limit
        self.max_text_chars = max_text_chars
        self._encoder: SentenceTransformer | None = None

    @property
    def loaded(self) -> bool:
        return self._encoder is not None

    def load(self) -> None:
        if self._encoder is None:
            logger.info("Loading model: %s", self.model_name)
            self._encoder = SentenceTransformer(self.model_name, device=self.device)

    def close(self) -> None:
        if self._encoder is not None:
            logger.info("Releasing model: %s", self.model_name)
            self._encoder = None

    def __enter__(self) -> SentenceTransformerProvider:
        self.load()
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def embed(self, text: str) -> list[float]:
        if self.max_text_chars is not None and len(text) > self.max_text_chars:
            raise TextTooLongError(
                f"text too long: {len(text)} chars (max {self.max_text_chars})"
            )
        self.load()
        text = truncate_to_word_limit(text, self.word_limit)
        embedding = self._encoder.encode(
            text,
            convert_to_numpy=True,
            normalize_embeddings=True,
            show_progress_bar=False,
        )
        return np.asarray(embedding, dtype=np.float64).tolist()
