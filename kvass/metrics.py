"""Small in-process metric types with a text exposition format."""

from __future__ import annotations

import math
import threading
from collections.abc import Iterable, Iterator, Mapping, Sequence
from typing import Union

LabelValues = Union[Sequence[str], Mapping[str, str]]

DEFAULT_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)


def _format_value(value: float) -> str:
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    if math.isnan(value):
        return "NaN"
    if float(value).is_integer():
        return str(int(value))
    return repr(float(value))


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def _label_text(pairs: Iterable[tuple[str, str]]) -> str:
    body = ",".join(f'{name}="{_escape(value)}"' for name, value in pairs)
    return f"{{{body}}}" if body else ""


class _Metric:
    kind = "untyped"

    def __init__(self, name: str, help: str = "", labelnames: Iterable[str] = ()):
        self.name = name
        self.help = help
        self.labelnames = tuple(labelnames)
        self._lock = threading.Lock()

    def _key(self, labels: LabelValues) -> tuple[str, ...]:
        if isinstance(labels, Mapping):
            if set(labels) != set(self.labelnames):
                raise ValueError(
                    f"{self.name}: expected labels {self.labelnames}, got {tuple(labels)}"
                )
            return tuple(str(labels[name]) for name in self.labelnames)
        key = tuple(str(value) for value in labels)
        if len(key) != len(self.labelnames):
            raise ValueError(
                f"{self.name}: expected {len(self.labelnames)} label values, got {len(key)}"
            )
        return key

    def samples(self) -> Iterator[tuple[str, list[tuple[str, str]], float]]:
        """Yield (sample name, label pairs, value) for exposition."""
        raise NotImplementedError


class _Scalar(_Metric):
    """Shared storage for metrics holding one number per label set."""

    def __init__(self, name: str, help: str = "", labelnames: Iterable[str] = ()):
        super().__init__(name, help, labelnames)
        self._values: dict[tuple[str, ...], float] = {}

    def _add(self, labels: LabelValues, amount: float) -> None:
        key = self._key(labels)
        with self._lock:
            self._values[key] = self._values.get(key, 0.0) + amount

    def _get(self, labels: LabelValues) -> float:
        key = self._key(labels)
        with self._lock:
            return self._values.get(key, 0.0)

    def _pop(self, labels: LabelValues) -> bool:
        key = self._key(labels)
        with self._lock:
            return self._values.pop(key, None) is not None

    def samples(self):
        with self._lock:
            items = sorted(self._values.items())
        for key, value in items:
            yield self.name, list(zip(self.labelnames, key)), value


class Counter(_Scalar):
    """A monotonically increasing value per label set."""

    kind = "counter"

    def __init__(self, name: str, help: str = "", labelnames: Iterable[str] = ()):
        super().__init__(name, help, labelnames)

    def inc(self, labels: LabelValues = (), amount: float = 1.0) -> None:
        if amount < 0:
            raise ValueError("counter cannot decrease")
        self._add(labels, amount)

    def value(self, labels: LabelValues = ()) -> float:
        return self._get(labels)

    def remove(self, labels: LabelValues = ()) -> bool:
        """Drop the series for ``labels``; return whether it existed."""
        return self._pop(labels)


class Gauge(_Scalar):
    """A value per label set that may go up and down."""

    kind = "gauge"

    def __init__(self, name: str, help: str = "", labelnames: Iterable[str] = ()):
        super().__init__(name, help, labelnames)

    def inc(self, labels: LabelValues = (), amount: float = 1.0) -> None:
        self._add(labels, amount)

    def dec(self, labels: LabelValues = (), amount: float = 1.0) -> None:
        self._add(labels, -amount)

    def set(self, labels: LabelValues = (), value: float = 0.0) -> None:
        key = self._key(labels)
        with self._lock:
            self._values[key] = float(value)

    def value(self, labels: LabelValues = ()) -> float:
        return self._get(labels)

    def remove(self, labels: LabelValues = ()) -> bool:
        """Drop the series for ``labels``; return whether it existed."""
        return self._pop(labels)


class _HistogramSeries:
    __slots__ = ("bucket_counts", "total", "count")

    def __init__(self, size: int):
        self.bucket_counts = [0] * size
        self.total = 0.0
        self.count = 0


class Histogram(_Metric):
    """Observations counted into cumulative buckets per label set."""

    kind = "histogram"

    def __init__(
        self,
        name: str,
        help: str = "",
        labelnames: Iterable[str] = (),
        buckets: Iterable[float] | None = None,
    ):
        super().__init__(name, help, labelnames)
        bounds = sorted(float(b) for b in (DEFAULT_BUCKETS if buckets is None else buckets))
        if not bounds or not math.isinf(bounds[-1]):
            bounds.append(math.inf)
        self.buckets = tuple(bounds)
        self._series: dict[tuple[str, ...], _HistogramSeries] = {}

    def observe(self, labels: LabelValues = (), value: float = 0.0) -> None:
        key = self._key(labels)
        with self._lock:
            series = self._series.setdefault(key, _HistogramSeries(len(self.buckets)))
            for index, bound in enumerate(self.buckets):
                if value <= bound:
                    series.bucket_counts[index] += 1
                    break
            series.total += value
            series.count += 1

    def count(self, labels: LabelValues = ()) -> int:
        key = self._key(labels)
        with self._lock:
            series = self._series.get(key)
            return series.count if series else 0

    def samples(self):
        with self._lock:
            items = sorted(
                (key, list(s.bucket_counts), s.total, s.count)
                for key, s in self._series.items()
            )
        for key, counts, total, count in items:
            pairs = list(zip(self.labelnames, key))
            cumulative = 0
            for bound, hits in zip(self.buckets, counts):
                cumulative += hits
                yield (
                    f"{self.name}_bucket",
                    pairs + [("le", _format_value(bound))],
                    cumulative,
                )
            yield f"{self.name}_sum", pairs, total
            yield f"{self.name}_count", pairs, count


class Registry:
    """A set of uniquely named metrics."""

    def __init__(self) -> None:
        self._metrics: dict[str, _Metric] = {}
        self._lock = threading.Lock()

    def register(self, metric: _Metric) -> _Metric:
        with self._lock:
            if metric.name in self._metrics:
                raise ValueError(f"metric {metric.name} already registered")
            self._metrics[metric.name] = metric
        return metric

    def expose(self) -> str:
        """Render every registered metric in the text exposition format."""
        with self._lock:
            metrics = sorted(self._metrics.values(), key=lambda m: m.name)
        lines: list[str] = []
        for metric in metrics:
            lines.append(f"# HELP {metric.name} {metric.help}")
            lines.append(f"# TYPE {metric.name} {metric.kind}")
            for sample_name, pairs, value in metric.samples():
                lines.append(f"{sample_name}{_label_text(pairs)} {_format_value(value)}")
        return "\n".join(lines) + ("\n" if lines else "")