"""Configuration and the unavailable in-process ONNX embedder."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

from engram.embed import EmbedError, Embedder, Vector


@dataclass
class ONNXConfig:
    """Settings for an in-process ONNX embedding model. ``timeout`` is in seconds."""

    model_dir: str = ""
    lib_path: str = ""
    max_seq_len: int = 8192
    dim: int = 768
    batch_size: int = 32
    timeout: float = 5.0


class ONNXEmbedNotBuiltError(EmbedError):
    """The ONNX embedder is not available in this build."""

    def __init__(self) -> None:
        super().__init__(
            "onnx embedder not compiled in; use the ollama embedding provider"
        )


class ONNXEmbedder(Embedder):
    """Placeholder provider: every operation reports that ONNX is unavailable."""

    closed: bool = False

    def __init__(self, config: ONNXConfig) -> None:
        self.config = config
        raise ONNXEmbedNotBuiltError()

    def embed_batch(self, texts: Sequence[str]) -> list[Vector]:
        raise ONNXEmbedNotBuiltError()

    def embed_query(self, texts: Sequence[str]) -> list[Vector]:
        raise ONNXEmbedNotBuiltError()

    def dim(self) -> int:
        return 0

    def close(self) -> None:
        """Mark the embedder closed; there are no resources to release."""
        self.closed = True