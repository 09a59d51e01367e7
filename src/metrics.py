from __future__ import annotations

from dataclasses import dataclass, field
from math import ceil, floor, sqrt
from typing import Any, Callable

from records import RawRun


SCALAR_FIELDS = (
    "ttft",
    "total_time",
    "total_tokens",
    "average_speed",
    "peak_speed",
    "peak_tps",
)
WIRE_NAMES = {
    "ttft": "ttft",
    "total_time": "totalTime",
    "total_tokens": "totalTokens",
    "average_speed": "averageSpeed",
    "peak_speed": "peakSpeed",
    "peak_tps": "peakTps",
}
PERCENTILES = {"p50": 0.50, "p95": 0.95, "p99": 0.99}
BUCKET_MS = 1000.0


class MetricsError(ValueError):
    pass


class EmptyRunError(MetricsError):
    """A run closed its stream without producing a single token."""

    def __init__(self, raw_run: RawRun) -> None:
        super().__init__(
            f"Run started at {raw_run.started_at} produced no tokens "
            f"in {raw_run.total_time_ms:.2f}ms"
        )
        self.raw_run = raw_run


class EmptyBatchError(MetricsError):
    """Aggregate statistics were requested over zero runs."""

    def __init__(self) -> None:
        super().__init__("Cannot compute statistics over zero runs")


@dataclass(slots=True)
class CalculatedMetrics:
    ttft: float
    total_time: float
    total_tokens: float
    average_speed: float
    peak_speed: float
    peak_tps: float
    tps: list[float] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            WIRE_NAMES[name]: getattr(self, name) for name in SCALAR_FIELDS
        }
        data["tps"] = list(self.tps)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CalculatedMetrics":
        return cls(
            **{name: data[WIRE_NAMES[name]] for name in SCALAR_FIELDS},
            tps=list(data.get("tps") or []),
        )


@dataclass(slots=True)
class PercentileSummary:
    p50: float
    p95: float
    p99: float

    def to_dict(self) -> dict[str, float]:
        return {"p50": self.p50, "p95": self.p95, "p99": self.p99}


@dataclass(slots=True)
class StatsResult:
    mean: CalculatedMetrics
    min: CalculatedMetrics
    max: CalculatedMetrics
    std_dev: CalculatedMetrics
    percentiles: dict[str, PercentileSummary]
    sample_size: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "mean": self.mean.to_dict(),
            "min": self.min.to_dict(),
            "max": self.max.to_dict(),
            "stdDev": self.std_dev.to_dict(),
            "percentiles": {
                name: summary.to_dict() for name, summary in self.percentiles.items()
            },
            "sampleSize": self.sample_size,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StatsResult":
        return cls(
            mean=CalculatedMetrics.from_dict(data["mean"]),
            min=CalculatedMetrics.from_dict(data["min"]),
            max=CalculatedMetrics.from_dict(data["max"]),
            std_dev=CalculatedMetrics.from_dict(data["stdDev"]),
            percentiles={
                str(name): PercentileSummary(
                    p50=summary["p50"], p95=summary["p95"], p99=summary["p99"]
                )
                for name, summary in data["percentiles"].items()
            },
            sample_size=int(data["sampleSize"]),
        )


def _quantile_cont(values: list[float], percentile: float) -> float:
    if len(values) == 1:
        return values[0]

    sorted_values = sorted(values)
    position = (len(sorted_values) - 1) * percentile
    lower_index = floor(position)
    upper_index = ceil(position)
    if lower_index == upper_index:
        return sorted_values[lower_index]

    left = sorted_values[lower_index]
    right = sorted_values[upper_index]
    fraction = position - lower_index
    return left + (right - left) * fraction


def _mean(values: list[float]) -> float:
    return sum(values) / len(values)


def _population_std_dev(values: list[float]) -> float:
    # Divisor is n: the runs of one benchmark are the whole population.
    mean = _mean(values)
    return sqrt(sum((value - mean) ** 2 for value in values) / len(values))


def build_tps_buckets(raw_run: RawRun) -> list[float]:
    """Tokens received in each elapsed second of the run, starting at second 0."""
    bucket_count = floor(raw_run.total_time_ms / BUCKET_MS) + 1
    buckets = [0] * bucket_count
    for event in raw_run.events:
        buckets[floor(event.offset_ms / BUCKET_MS)] += event.token_count
    return buckets


def _validate_raw_run(raw_run: RawRun) -> None:
    if raw_run.total_time_ms < 0:
        raise ValueError("total_time_ms must be >= 0")

    previous_offset = 0.0
    for index, event in enumerate(raw_run.events):
        if event.offset_ms < 0:
            raise ValueError(f"Token event {index} has a negative offset")
        if event.token_count < 0:
            raise ValueError(f"Token event {index} has a negative token count")
        if event.offset_ms < previous_offset:
            raise ValueError(f"Token event {index} arrived out of order")
        if event.offset_ms > raw_run.total_time_ms:
            raise ValueError(f"Token event {index} arrived after the stream closed")
        previous_offset = event.offset_ms


def calculate_run_metrics(raw_run: RawRun) -> CalculatedMetrics:
    """Derive the per-run metrics of one recorded stream.

    All times are milliseconds since the request started. Raises
    ``EmptyRunError`` when the run recorded no token events; the caller
    decides whether to drop the run or abort the batch.
    """
    _validate_raw_run(raw_run)
    if not raw_run.events:
        raise EmptyRunError(raw_run)

    total_time = raw_run.total_time_ms
    total_tokens = sum(event.token_count for event in raw_run.events)
    average_speed = total_tokens / (total_time / 1000) if total_time > 0 else 0.0
    tps = build_tps_buckets(raw_run)
    peak = max(tps) if tps else 0

    return CalculatedMetrics(
        ttft=raw_run.events[0].offset_ms,
        total_time=total_time,
        total_tokens=total_tokens,
        average_speed=average_speed,
        peak_speed=peak,
        peak_tps=peak,
        tps=tps,
    )


def mean_tps_series(metrics_list: list[CalculatedMetrics]) -> list[float]:
    """Element-wise mean of the per-second series.

    Runs shorter than the longest one count as 0 for the seconds they did
    not cover, so every point averages over the whole cohort.
    """
    if not metrics_list:
        return []
    length = max(len(metrics.tps) for metrics in metrics_list)
    series: list[float] = []
    for index in range(length):
        values = [
            metrics.tps[index] if index < len(metrics.tps) else 0
            for metrics in metrics_list
        ]
        series.append(_mean(values))
    return series


def _reduce_fields(
    metrics_list: list[CalculatedMetrics],
    statistic: Callable[[list[float]], float],
    tps: list[float] | None = None,
) -> CalculatedMetrics:
    return CalculatedMetrics(
        **{
            name: statistic([getattr(metrics, name) for metrics in metrics_list])
            for name in SCALAR_FIELDS
        },
        tps=tps if tps is not None else [],
    )


def calculate_aggregate_stats(metrics_list: list[CalculatedMetrics]) -> StatsResult:
    """Aggregate per-run metrics into mean/min/max/stdDev/percentiles.

    Percentiles sort each field ascending and interpolate linearly at index
    ``p * (n - 1)``. Values are returned at full precision; rounding belongs
    to the exporters.
    """
    if not metrics_list:
        raise EmptyBatchError()

    percentiles = {}
    for name in SCALAR_FIELDS:
        values = [getattr(metrics, name) for metrics in metrics_list]
        percentiles[WIRE_NAMES[name]] = PercentileSummary(
            **{key: _quantile_cont(values, rank) for key, rank in PERCENTILES.items()}
        )

    return StatsResult(
        mean=_reduce_fields(metrics_list, _mean, tps=mean_tps_series(metrics_list)),
        min=_reduce_fields(metrics_list, min),
        max=_reduce_fields(metrics_list, max),
        std_dev=_reduce_fields(metrics_list, _population_std_dev),
        percentiles=percentiles,
        sample_size=len(metrics_list),
    )
