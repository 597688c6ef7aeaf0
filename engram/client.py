"""HTTP client for the memory service API used by the command-line tools."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional, Sequence

import requests


class ApiError(Exception):
    """A request to the API failed; ``status`` is the HTTP status when one was received."""

    def __init__(self, message: str, *, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


def _field(data: dict[str, Any], key: str, kind: type, default: Any) -> Any:
    value = data.get(key)
    if value is None:
        return default
    if kind is float and isinstance(value, int) and not isinstance(value, bool):
        return float(value)
    if kind is int and isinstance(value, bool):
        raise ValueError(f"field {key!r} has the wrong type")
    if not isinstance(value, kind):
        raise ValueError(f"field {key!r} has the wrong type")
    return value


def _object(data: Any) -> dict[str, Any]:
    if not isinstance(data, dict):
        raise ValueError("expected a JSON object")
    return data


@dataclass
class StoreResponse:
    """Result of storing one memory."""

    memory_id: str = ""
    chunks_stored: int = 0
    chunks_deduped: int = 0
    stored: bool = False

    @classmethod
    def from_json(cls, data: Any) -> "StoreResponse":
        data = _object(data)
        return cls(
            memory_id=_field(data, "MemoryID", str, ""),
            chunks_stored=_field(data, "ChunksStored", int, 0),
            chunks_deduped=_field(data, "ChunksDeduped", int, 0),
            stored=_field(data, "Stored", bool, False),
        )


@dataclass
class RetrieveResult:
    """One retrieved chunk."""

    memory_id: str = ""
    chunk_id: str = ""
    content: str = ""
    score: float = 0.0
    source: str = ""
    created_at: str = ""

    @classmethod
    def from_json(cls, data: Any) -> "RetrieveResult":
        data = _object(data)
        return cls(
            memory_id=_field(data, "MemoryID", str, ""),
            chunk_id=_field(data, "ChunkID", str, ""),
            content=_field(data, "Content", str, ""),
            score=_field(data, "Score", float, 0.0),
            source=_field(data, "Source", str, ""),
            created_at=_field(data, "CreatedAt", str, ""),
        )


@dataclass
class RetrieveStats:
    """Timing of a retrieval."""

    total_ms: int = 0

    @classmethod
    def from_json(cls, data: Any) -> "RetrieveStats":
        if data is None:
            return cls()
        return cls(total_ms=_field(_object(data), "TotalMs", int, 0))


@dataclass
class RetrieveResponse:
    """Results of a retrieval with its stats."""

    results: list[RetrieveResult] = field(default_factory=list)
    stats: RetrieveStats = field(default_factory=RetrieveStats)

    @classmethod
    def from_json(cls, data: Any) -> "RetrieveResponse":
        data = _object(data)
        raw_results = _field(data, "Results", list, [])
        return cls(
            results=[RetrieveResult.from_json(item) for item in raw_results],
            stats=RetrieveStats.from_json(data.get("Stats")),
        )


@dataclass
class UserStateResponse:
    """Aggregate memory statistics for a user."""

    memory_count: int = 0
    chunk_count: int = 0
    first_memory: str = ""
    last_memory: str = ""
    top_sources: list[str] = field(default_factory=list)

    @classmethod
    def from_json(cls, data: Any) -> "UserStateResponse":
        data = _object(data)
        sources = _field(data, "TopSources", list, [])
        if not all(isinstance(s, str) for s in sources):
            raise ValueError("field 'TopSources' has the wrong type")
        return cls(
            memory_count=_field(data, "MemoryCount", int, 0),
            chunk_count=_field(data, "ChunkCount", int, 0),
            first_memory=_field(data, "FirstMemory", str, ""),
            last_memory=_field(data, "LastMemory", str, ""),
            top_sources=list(sources),
        )


class Client:
    """A thin JSON client for the memory API. ``timeout`` is in seconds."""

    def __init__(self, base_url: str, user_id: str, timeout: float = 15.0) -> None:
        self.base_url = base_url
        self.user_id = user_id
        self.timeout = timeout
        self._session = requests.Session()

    @property
    def _timeout(self) -> Optional[float]:
        return self.timeout if self.timeout > 0 else None

    def store(self, content: str, source: str, tags: Optional[Sequence[str]]) -> StoreResponse:
        """Store a single fact."""
        body = {
            "user_id": self.user_id,
            "content": content,
            "source": source,
            "metadata": {"tags": list(tags) if tags is not None else None},
        }
        path = "/v1/memories"
        data = self._post(path, body)
        try:
            return StoreResponse.from_json(data)
        except ValueError as exc:
            raise ApiError(f"POST {path} decode: {exc}") from exc

    def retrieve(self, query: str, k: int, rerank: bool) -> RetrieveResponse:
        """Retrieve memories matching a query."""
        body = {"user_id": self.user_id, "query": query, "k": k, "rerank": rerank}
        path = "/v1/retrieve"
        data = self._post(path, body)
        try:
            return RetrieveResponse.from_json(data)
        except ValueError as exc:
            raise ApiError(f"POST {path} decode: {exc}") from exc

    def state(self) -> UserStateResponse:
        """Return aggregate stats for the user."""
        url = f"{self.base_url}/v1/users/{self.user_id}/state"
        try:
            resp = self._session.get(url, timeout=self._timeout)
        except requests.RequestException as exc:
            raise ApiError(f"state request: {exc}") from exc
        if resp.status_code != 200:
            raise ApiError(
                f"state: status {resp.status_code}: {resp.text}", status=resp.status_code
            )
        try:
            return UserStateResponse.from_json(resp.json())
        except ValueError as exc:
            raise ApiError(f"state decode: {exc}") from exc

    def delete_memory(self, memory_id: str) -> None:
        """Delete a memory; anything but 204 raises :class:`ApiError`."""
        url = f"{self.base_url}/v1/memories/{memory_id}"
        try:
            resp = self._session.delete(url, timeout=self._timeout)
        except requests.RequestException as exc:
            raise ApiError(f"DELETE /v1/memories/{memory_id}: {exc}") from exc
        if resp.status_code == 204:
            return
        if resp.status_code == 404:
            raise ApiError(f"memory not found: {memory_id}", status=404)
        raise ApiError(
            f"DELETE /v1/memories/{memory_id}: status {resp.status_code}: {resp.text}",
            status=resp.status_code,
        )

    def _post(self, path: str, body: dict[str, Any]) -> Any:
        try:
            resp = self._session.post(self.base_url + path, json=body, timeout=self._timeout)
        except requests.RequestException as exc:
            raise ApiError(f"POST {path}: {exc}") from exc
        if not 200 <= resp.status_code < 300:
            raise ApiError(
                f"POST {path}: status {resp.status_code}: {resp.text}", status=resp.status_code
            )
        try:
            return resp.json()
        except ValueError as exc:
            raise ApiError(f"POST {path} decode: {exc}") from exc