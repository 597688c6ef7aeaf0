"""Semantic chunking: group sentences into chunks by embedding similarity."""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from itertools import groupby
from typing import Optional, Sequence

from engram.embed import Embedder, Vector

DEFAULT_MAX_TOKENS = 512
DEFAULT_MIN_TOKENS = 100
DEFAULT_SIMILARITY_THRESHOLD = 0.6

_TERMINATORS = ".!?"
_WHITESPACE = re.compile(r"\s")


@dataclass
class Chunk:
    """A chunk of text with the mean of its sentence embeddings."""

    content: str
    emb_vec: Optional[Vector] = None


@dataclass
class ChunkerConfig:
    """Chunking limits; zero values are replaced with the defaults."""

    max_tokens: int = DEFAULT_MAX_TOKENS
    min_tokens: int = DEFAULT_MIN_TOKENS
    similarity_threshold: float = DEFAULT_SIMILARITY_THRESHOLD


@dataclass
class _ProtoChunk:
    sentences: list[str] = field(default_factory=list)
    embeddings: list[Vector] = field(default_factory=list)
    tokens: int = 0
    centroid: Optional[Vector] = None

    @classmethod
    def start(cls, sentence: str, embedding: Vector, tokens: int) -> "_ProtoChunk":
        return cls([sentence], [embedding], tokens, list(embedding))

    def add(self, sentence: str, embedding: Vector, tokens: int) -> None:
        self.sentences.append(sentence)
        self.embeddings.append(embedding)
        self.tokens += tokens
        self.centroid = mean_vec(self.embeddings)

    def merged(self, other: "_ProtoChunk") -> "_ProtoChunk":
        embeddings = self.embeddings + other.embeddings
        return _ProtoChunk(
            sentences=self.sentences + other.sentences,
            embeddings=embeddings,
            tokens=self.tokens + other.tokens,
            centroid=mean_vec(embeddings),
        )


class Chunker:
    """Splits text into semantic chunks using an embedder."""

    def __init__(self, embedder: Embedder, config: Optional[ChunkerConfig] = None) -> None:
        config = config or ChunkerConfig()
        self.config = ChunkerConfig(
            max_tokens=config.max_tokens if config.max_tokens > 0 else DEFAULT_MAX_TOKENS,
            min_tokens=config.min_tokens if config.min_tokens > 0 else DEFAULT_MIN_TOKENS,
            similarity_threshold=(
                config.similarity_threshold
                if config.similarity_threshold != 0
                else DEFAULT_SIMILARITY_THRESHOLD
            ),
        )
        self._embedder = embedder

    def chunk(self, text: str) -> list[Chunk]:
        """Split ``text`` into chunks; embedder errors propagate."""
        sentences = split_sentences(text)
        if not sentences:
            return []

        embeddings = self._embedder.embed_batch(sentences)
        if len(embeddings) != len(sentences):
            # The embedder misbehaved; keep everything together rather than guess.
            return [Chunk(content=" ".join(sentences))]

        protos: list[_ProtoChunk] = []
        current: Optional[_ProtoChunk] = None
        for sentence, embedding in zip(sentences, embeddings):
            tokens = token_count(sentence)
            if current is not None:
                similar = cosine(current.centroid or [], embedding) >= self.config.similarity_threshold
                fits = current.tokens + tokens <= self.config.max_tokens
                if similar and fits:
                    current.add(sentence, embedding, tokens)
                    continue
                protos.append(current)
            current = _ProtoChunk.start(sentence, embedding, tokens)
        if current is not None:
            protos.append(current)

        protos = _merge_small(protos, self.config.min_tokens)
        return [
            Chunk(content=" ".join(p.sentences), emb_vec=mean_vec(p.embeddings))
            for p in protos
        ]


def _merge_small(chunks: list[_ProtoChunk], min_tokens: int) -> list[_ProtoChunk]:
    """Merge undersized chunks forward, or backward when the last one is small."""
    chunks = list(chunks)
    while len(chunks) > 1:
        idx = next((i for i, c in enumerate(chunks) if c.tokens < min_tokens), None)
        if idx is None:
            break
        if idx == len(chunks) - 1:
            chunks[idx - 1:] = [chunks[idx - 1].merged(chunks[idx])]
        else:
            chunks[idx:idx + 2] = [chunks[idx].merged(chunks[idx + 1])]
    return chunks


def split_sentences(text: str) -> list[str]:
    """Split text into sentences, keeping terminal punctuation.

    A single ``.`` after a probable abbreviation (short, all-caps or dotted
    token) does not end a sentence.
    """
    text = text.strip()
    if not text:
        return []

    sentences: list[str] = []
    buf: list[str] = []
    n = len(text)
    i = 0
    while i < n:
        ch = text[i]
        buf.append(ch)
        if ch in _TERMINATORS:
            while i + 1 < n and text[i + 1] in _TERMINATORS:
                i += 1
                buf.append(text[i])
            at_end = i + 1 >= n
            if at_end or text[i + 1].isspace():
                if ch == "." and _should_suppress_split("".join(buf)):
                    i += 1
                    continue
                sentence = "".join(buf).strip()
                if sentence:
                    sentences.append(sentence)
                buf.clear()
                while i + 1 < n and text[i + 1].isspace():
                    i += 1
        i += 1

    tail = "".join(buf).strip()
    if tail:
        sentences.append(tail)
    return sentences


def _should_suppress_split(buf: str) -> bool:
    trimmed = buf.rstrip(".")
    if not trimmed:
        return False
    token = _WHITESPACE.split(trimmed)[-1]
    if not token:
        return False
    if "." in token:
        return True
    if not all(c.isalpha() for c in token):
        return False
    return len(token) <= 3 or all(c.isupper() for c in token)


def _is_word_char(c: str) -> bool:
    return c.isalpha() or c.isdecimal()


def token_count(text: str) -> int:
    """Count runs of letters and digits."""
    return sum(1 for is_word, _ in groupby(text, key=_is_word_char) if is_word)


def cosine(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity; 0 for empty, zero or mismatched vectors."""
    if not a or not b or len(a) != len(b):
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    na = sum(x * x for x in a)
    nb = sum(y * y for y in b)
    if na == 0 or nb == 0:
        return 0.0
    return dot / (math.sqrt(na) * math.sqrt(nb))


def mean_vec(vecs: Sequence[Sequence[float]]) -> Optional[Vector]:
    """Element-wise mean; vectors of a different length than the first are skipped."""
    if not vecs:
        return None
    dim = len(vecs[0])
    total = [0.0] * dim
    for vec in vecs:
        if len(vec) != dim:
            continue
        total = [t + x for t, x in zip(total, vec)]
    count = len(vecs)
    return [t / count for t in total]