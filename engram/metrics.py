"""Prometheus-style instruments for the HTTP transport, with text exposition."""

from __future__ import annotations

import math
import threading
from typing import Any, Callable, Iterable, Sequence

DURATION_BUCKETS = (5.0, 10.0, 25.0, 50.0, 100.0, 250.0, 500.0, 1000.0, 2500.0, 5000.0)
CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"


def _fmt(value: float) -> str:
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    if float(value).is_integer() and abs(value) < 1e21:
        return str(int(value))
    return repr(float(value))


def _escape_help(text: str) -> str:
    return text.replace("\\", "\\\\").replace("\n", "\\n")


def _escape_label(text: str) -> str:
    return text.replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def _header(name: str, help_text: str, kind: str) -> list[str]:
    return [f"# HELP {name} {_escape_help(help_text)}", f"# TYPE {name} {kind}"]


class Counter:
    """A monotonically increasing value."""

    def __init__(self, name: str, help_text: str) -> None:
        self.name = name
        self.help = help_text
        self._value = 0.0
        self._lock = threading.Lock()

    def inc(self, amount: float = 1.0) -> None:
        if amount < 0:
            raise ValueError("counter cannot decrease in value")
        with self._lock:
            self._value += amount

    @property
    def value(self) -> float:
        with self._lock:
            return self._value

    def _expose(self) -> list[str]:
        return _header(self.name, self.help, "counter") + [f"{self.name} {_fmt(self.value)}"]


class Gauge:
    """A value that can go up and down."""

    def __init__(self, name: str, help_text: str) -> None:
        self.name = name
        self.help = help_text
        self._value = 0.0
        self._lock = threading.Lock()

    def set(self, value: float) -> None:
        with self._lock:
            self._value = float(value)

    @property
    def value(self) -> float:
        with self._lock:
            return self._value

    def _expose(self) -> list[str]:
        return _header(self.name, self.help, "gauge") + [f"{self.name} {_fmt(self.value)}"]


class Histogram:
    """Counts observations into cumulative buckets and tracks their sum."""

    def __init__(self, name: str, help_text: str, buckets: Sequence[float] = DURATION_BUCKETS) -> None:
        self.name = name
        self.help = help_text
        self.buckets = tuple(sorted(float(b) for b in buckets))
        self._counts = [0] * len(self.buckets)
        self._count = 0
        self._sum = 0.0
        self._lock = threading.Lock()

    def observe(self, value: float) -> None:
        with self._lock:
            self._count += 1
            self._sum += value
            for i, upper in enumerate(self.buckets):
                if value <= upper:
                    self._counts[i] += 1
                    break

    @property
    def count(self) -> int:
        with self._lock:
            return self._count

    @property
    def sum(self) -> float:
        with self._lock:
            return self._sum

    def cumulative_buckets(self) -> list[tuple[float, int]]:
        """Return (upper bound, cumulative count) pairs, ending with +Inf."""
        with self._lock:
            out: list[tuple[float, int]] = []
            running = 0
            for upper, n in zip(self.buckets, self._counts):
                running += n
                out.append((upper, running))
            out.append((math.inf, self._count))
            return out

    def _samples(self, labels: str = "") -> list[str]:
        prefix = f"{labels}," if labels else ""
        lines = [
            f'{self.name}_bucket{{{prefix}le="{_fmt(upper)}"}} {n}'
            for upper, n in self.cumulative_buckets()
        ]
        suffix = f"{{{labels}}}" if labels else ""
        lines.append(f"{self.name}_sum{suffix} {_fmt(self.sum)}")
        lines.append(f"{self.name}_count{suffix} {self.count}")
        return lines

    def _expose(self) -> list[str]:
        return _header(self.name, self.help, "histogram") + self._samples()


class _HistogramVec:
    """Histograms partitioned by the value of a single label."""

    def __init__(self, name: str, help_text: str, buckets: Sequence[float], label: str) -> None:
        self.name = name
        self.help = help_text
        self.label = label
        self._buckets = tuple(buckets)
        self._children: dict[str, Histogram] = {}
        self._lock = threading.Lock()

    def labels(self, value: str) -> Histogram:
        with self._lock:
            child = self._children.get(value)
            if child is None:
                child = Histogram(self.name, self.help, self._buckets)
                self._children[value] = child
            return child

    def _expose(self) -> list[str]:
        with self._lock:
            children = sorted(self._children.items())
        if not children:
            return []
        lines = _header(self.name, self.help, "histogram")
        for value, child in children:
            lines.extend(child._samples(f'{self.label}="{_escape_label(value)}"'))
        return lines


class Metrics:
    """All instruments of the service, in a private registry."""

    def __init__(self) -> None:
        self.ingest_duration = Histogram(
            "engram_ingest_duration_ms",
            "Duration of Store() calls in milliseconds.",
            DURATION_BUCKETS,
        )
        self.retrieve_duration = _HistogramVec(
            "engram_retrieve_duration_ms",
            "Duration of Retrieve() calls in milliseconds.",
            DURATION_BUCKETS,
            "rerank",
        )
        self.embedder_failures = Counter(
            "engram_embedder_failures_total",
            "Total number of embedder failures.",
        )
        self.pending_vectors = Gauge(
            "engram_pending_vectors",
            "Current count of rows in the pending_vectors table.",
        )

    def _families(self) -> Iterable[Any]:
        families = [
            self.ingest_duration,
            self.retrieve_duration,
            self.embedder_failures,
            self.pending_vectors,
        ]
        return sorted(families, key=lambda f: f.name)

    def record_ingest(self, duration_ms: float) -> None:
        self.ingest_duration.observe(duration_ms)

    def record_retrieve(self, duration_ms: float, rerank: bool) -> None:
        self.retrieve_duration.labels("true" if rerank else "false").observe(duration_ms)

    def record_embedder_failure(self) -> None:
        self.embedder_failures.inc()

    def set_pending_vectors(self, n: float) -> None:
        self.pending_vectors.set(n)

    def exposition(self) -> str:
        """Render all metrics in the Prometheus text format."""
        lines: list[str] = []
        for family in self._families():
            lines.extend(family._expose())
        return "\n".join(lines) + "\n" if lines else ""

    def wsgi_app(self, environ: dict[str, Any], start_response: Callable[..., Any]) -> list[bytes]:
        """WSGI application serving the exposition text."""
        body = self.exposition().encode("utf-8")
        start_response(
            "200 OK",
            [("Content-Type", CONTENT_TYPE), ("Content-Length", str(len(body)))],
        )
        return [body]