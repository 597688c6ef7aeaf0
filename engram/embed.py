"""Embedding providers: the Embedder interface and an Ollama-backed client."""

from __future__ import annotations

import abc
import enum
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional, Sequence

import requests

FAILURE_THRESHOLD = 10
OPEN_DURATION = 30.0
MAX_BACKOFF = 5.0
BASE_BACKOFF = 0.1
DEFAULT_BATCH = 32

Vector = list[float]


class Embedder(abc.ABC):
    """Produces vectors for text inputs.

    ``embed_batch`` is used for documents at ingest time, ``embed_query`` for
    retrieval queries. Providers without task prefixes may treat them alike.
    """

    @abc.abstractmethod
    def embed_batch(self, texts: Sequence[str]) -> list[Vector]:
        """Embed texts for document ingestion."""

    @abc.abstractmethod
    def embed_query(self, texts: Sequence[str]) -> list[Vector]:
        """Embed texts for retrieval queries."""

    @abc.abstractmethod
    def dim(self) -> int:
        """Return the embedding dimension."""


@dataclass
class EmbedderConfig:
    """Settings for :class:`OllamaEmbedder`. ``timeout`` is in seconds."""

    base_url: str = ""
    model: str = ""
    dim: int = 0
    batch: int = DEFAULT_BATCH
    timeout: float = 0.0
    retries: int = 1


class CircuitState(enum.Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class EmbedError(Exception):
    """An embedding request failed."""

    def __init__(self, message: str, *, retryable: bool = False) -> None:
        super().__init__(message)
        self.retryable = retryable


class CircuitOpenError(EmbedError):
    """Raised while the circuit breaker blocks requests."""


class OllamaEmbedder(Embedder):
    """Calls Ollama's ``/api/embed`` endpoint with retries and a circuit breaker."""

    def __init__(
        self,
        config: EmbedderConfig,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self._config = config
        self._clock = clock or time.monotonic
        self._session = requests.Session()
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._opened_at = 0.0

    def dim(self) -> int:
        return self._config.dim

    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    def embed_batch(self, texts: Sequence[str]) -> list[Vector]:
        """Embed texts, sending at most ``config.batch`` per request."""
        self._check_circuit()
        texts = list(texts)
        size = self._config.batch if self._config.batch > 0 else DEFAULT_BATCH
        results: list[Vector] = []
        for start in range(0, len(texts), size):
            try:
                vectors = self._embed_with_retry(texts[start:start + size])
            except EmbedError:
                self._record_failure()
                raise
            self._record_success()
            results.extend(vectors)
        return results

    def embed_query(self, texts: Sequence[str]) -> list[Vector]:
        # The model's template applies the right task prefix on the server side.
        return self.embed_batch(texts)

    def _embed_with_retry(self, texts: list[str]) -> list[Vector]:
        attempts = max(self._config.retries, 1)
        last_error: Optional[EmbedError] = None
        for attempt in range(attempts):
            if attempt:
                time.sleep(min(BASE_BACKOFF * 2 ** (attempt - 1), MAX_BACKOFF))
            try:
                return self._do_request(texts)
            except EmbedError as exc:
                if not exc.retryable:
                    raise
                last_error = exc
        assert last_error is not None
        raise last_error

    def _do_request(self, texts: list[str]) -> list[Vector]:
        url = self._config.base_url + "/api/embed"
        timeout = self._config.timeout if self._config.timeout > 0 else None
        try:
            resp = self._session.post(
                url,
                json={"model": self._config.model, "input": texts},
                timeout=timeout,
            )
        except requests.RequestException as exc:
            raise EmbedError(f"http request: {exc}", retryable=True) from exc

        if resp.status_code >= 500:
            raise EmbedError(f"server error: HTTP {resp.status_code}", retryable=True)
        if resp.status_code >= 400:
            raise EmbedError(f"client error: HTTP {resp.status_code}", retryable=False)

        try:
            payload = resp.json()
            if not isinstance(payload, dict):
                raise ValueError("response is not a JSON object")
            embeddings = payload.get("embeddings") or []
            return [[float(x) for x in vec] for vec in embeddings]
        except (ValueError, TypeError) as exc:
            raise EmbedError(f"decode response: {exc}", retryable=True) from exc

    def _check_circuit(self) -> None:
        with self._lock:
            if self._state is CircuitState.OPEN:
                if self._clock() - self._opened_at >= OPEN_DURATION:
                    self._state = CircuitState.HALF_OPEN
                    return
                raise CircuitOpenError("embed: circuit breaker open")

    def _record_success(self) -> None:
        with self._lock:
            self._failures = 0
            self._state = CircuitState.CLOSED

    def _record_failure(self) -> None:
        with self._lock:
            self._failures += 1
            if self._state is CircuitState.HALF_OPEN or self._failures >= FAILURE_THRESHOLD:
                self._state = CircuitState.OPEN
                self._opened_at = self._clock()