from __future__ import annotations

import json
import math
from pathlib import Path
import sys

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from metrics import (
    CalculatedMetrics,
    EmptyBatchError,
    EmptyRunError,
    StatsResult,
    build_tps_buckets,
    calculate_aggregate_stats,
    calculate_run_metrics,
    mean_tps_series,
)
from records import RawRun, TokenEvent


def _run(total_time_ms: float, *events: tuple[float, int]) -> RawRun:
    return RawRun(
        started_at=0.0,
        total_time_ms=total_time_ms,
        events=tuple(TokenEvent(offset_ms=offset, token_count=count) for offset, count in events),
    )


def _metrics(
    ttft: float = 100.0,
    total_time: float = 2000.0,
    total_tokens: int = 100,
    average_speed: float = 50.0,
    peak_speed: float = 70.0,
    peak_tps: float = 70.0,
    tps: list[float] | None = None,
) -> CalculatedMetrics:
    return CalculatedMetrics(
        ttft=ttft,
        total_time=total_time,
        total_tokens=total_tokens,
        average_speed=average_speed,
        peak_speed=peak_speed,
        peak_tps=peak_tps,
        tps=tps if tps is not None else [],
    )


@pytest.fixture
def three_runs() -> list[CalculatedMetrics]:
    return [
        _metrics(ttft=100.5, total_time=2000, total_tokens=100, peak_speed=75, tps=[10, 20, 30, 40]),
        _metrics(ttft=150.25, total_time=2500, total_tokens=125, peak_speed=80, tps=[15, 25, 35, 45]),
        _metrics(ttft=120, total_time=2200, total_tokens=110, peak_speed=70, tps=[12, 22, 32, 42]),
    ]


def test_ttft_is_first_event_offset() -> None:
    metrics = calculate_run_metrics(_run(1500.0, (123.456, 1), (500.0, 1)))
    assert metrics.ttft == 123.456


def test_total_tokens_sums_chunk_counts_not_events() -> None:
    metrics = calculate_run_metrics(_run(1500.0, (100.0, 3), (400.0, 1), (900.0, 5)))
    assert metrics.total_tokens == 9
    assert metrics.total_time == 1500.0
    assert metrics.average_speed == pytest.approx(6.0)


def test_average_speed_uses_whole_request_duration() -> None:
    # 10 tokens over 2s, even though generation started late.
    metrics = calculate_run_metrics(_run(2000.0, (1500.0, 10)))
    assert metrics.average_speed == pytest.approx(5.0)


def test_average_speed_is_zero_when_total_time_is_zero() -> None:
    metrics = calculate_run_metrics(_run(0.0, (0.0, 4)))
    assert metrics.average_speed == 0.0
    assert not math.isnan(metrics.average_speed)
    assert metrics.tps == [4]


def test_tps_buckets_per_elapsed_second() -> None:
    raw_run = _run(3200.0, (100.0, 2), (999.0, 1), (1000.0, 4), (2500.0, 3))
    metrics = calculate_run_metrics(raw_run)
    assert metrics.tps == [3, 4, 3, 0]
    assert metrics.peak_speed == 4
    assert metrics.peak_tps == 4


def test_tps_length_covers_trailing_time_after_last_token() -> None:
    assert build_tps_buckets(_run(4999.0, (10.0, 1))) == [1, 0, 0, 0, 0]
    assert build_tps_buckets(_run(5000.0, (10.0, 1))) == [1, 0, 0, 0, 0, 0]


def test_run_without_events_raises_empty_run_error() -> None:
    raw_run = _run(800.0)
    with pytest.raises(EmptyRunError) as excinfo:
        calculate_run_metrics(raw_run)
    assert excinfo.value.raw_run is raw_run


def test_out_of_order_events_are_rejected() -> None:
    with pytest.raises(ValueError, match="out of order"):
        calculate_run_metrics(_run(1000.0, (500.0, 1), (200.0, 1)))


def test_events_after_stream_close_are_rejected() -> None:
    with pytest.raises(ValueError, match="after the stream closed"):
        calculate_run_metrics(_run(1000.0, (1200.0, 1)))


def test_negative_token_count_is_rejected() -> None:
    with pytest.raises(ValueError, match="negative token count"):
        calculate_run_metrics(_run(1000.0, (10.0, -1)))


def test_std_dev_uses_population_divisor() -> None:
    stats = calculate_aggregate_stats([_metrics(ttft=10), _metrics(ttft=20), _metrics(ttft=30)])
    assert stats.mean.ttft == 20
    assert stats.std_dev.ttft == pytest.approx(math.sqrt(200 / 3))
    assert stats.std_dev.ttft == pytest.approx(8.1650, abs=1e-4)
    assert stats.std_dev.ttft != pytest.approx(10.0)


def test_p50_of_odd_sample_is_middle_value(three_runs: list[CalculatedMetrics]) -> None:
    stats = calculate_aggregate_stats(three_runs)
    assert stats.percentiles["ttft"].p50 == 120


def test_percentiles_interpolate_between_ranks() -> None:
    stats = calculate_aggregate_stats([_metrics(ttft=value) for value in (4.0, 1.0, 3.0, 2.0)])
    summary = stats.percentiles["ttft"]
    assert summary.p50 == pytest.approx(2.5)
    assert summary.p95 == pytest.approx(3.85)
    assert summary.p99 == pytest.approx(3.97)


def test_aggregate_scalar_fields(three_runs: list[CalculatedMetrics]) -> None:
    stats = calculate_aggregate_stats(three_runs)
    assert stats.sample_size == 3
    assert stats.mean.ttft == pytest.approx(123.5833333)
    assert stats.min.ttft == 100.5
    assert stats.max.ttft == 150.25
    assert stats.min.total_tokens == 100
    assert stats.max.total_tokens == 125
    assert stats.mean.total_time == pytest.approx(2233.3333333)
    assert stats.std_dev.average_speed == 0.0
    assert stats.percentiles["totalTime"].p95 == pytest.approx(2470.0)
    assert set(stats.percentiles) == {
        "ttft",
        "totalTime",
        "totalTokens",
        "averageSpeed",
        "peakSpeed",
        "peakTps",
    }


def test_aggregate_of_empty_batch_fails() -> None:
    with pytest.raises(EmptyBatchError):
        calculate_aggregate_stats([])


def test_aggregate_of_single_run() -> None:
    single = _metrics(ttft=250.5, total_time=1800, total_tokens=42, average_speed=23.3, tps=[20, 22])
    stats = calculate_aggregate_stats([single])
    assert stats.sample_size == 1
    for name, summary in stats.percentiles.items():
        expected = single.to_dict()[name]
        assert summary.p50 == expected
        assert summary.p95 == expected
        assert summary.p99 == expected
    for value in stats.std_dev.to_dict().values():
        if isinstance(value, list):
            continue
        assert value == 0
    assert stats.mean.tps == [20, 22]


def test_mean_tps_pads_shorter_runs_with_zero() -> None:
    series = mean_tps_series([_metrics(tps=[10, 20, 30, 40]), _metrics(tps=[15, 25])])
    assert series == [12.5, 22.5, 15.0, 20.0]


def test_only_mean_carries_a_tps_series(three_runs: list[CalculatedMetrics]) -> None:
    stats = calculate_aggregate_stats(three_runs)
    assert stats.mean.tps == pytest.approx([37 / 3, 67 / 3, 97 / 3, 127 / 3])
    assert stats.min.tps == []
    assert stats.max.tps == []
    assert stats.std_dev.tps == []


def test_percentiles_do_not_depend_on_input_order(three_runs: list[CalculatedMetrics]) -> None:
    forward = calculate_aggregate_stats(three_runs)
    backward = calculate_aggregate_stats(list(reversed(three_runs)))
    assert forward.percentiles == backward.percentiles
    assert forward.min == backward.min
    assert forward.max == backward.max


def test_engine_output_is_not_rounded() -> None:
    metrics = calculate_run_metrics(_run(3000.0, (333.3333, 1), (1000.0, 9)))
    assert metrics.average_speed == 10 / 3


def test_stats_result_survives_json_round_trip(three_runs: list[CalculatedMetrics]) -> None:
    stats = calculate_aggregate_stats(three_runs)
    payload = json.loads(json.dumps(stats.to_dict()))
    assert payload["sampleSize"] == 3
    assert "stdDev" in payload
    assert StatsResult.from_dict(payload) == stats


def test_calculated_metrics_uses_wire_field_names() -> None:
    data = calculate_run_metrics(_run(1500.0, (200.0, 2))).to_dict()
    assert data == {
        "ttft": 200.0,
        "totalTime": 1500.0,
        "totalTokens": 2,
        "averageSpeed": 2 / 1.5,
        "peakSpeed": 2,
        "peakTps": 2,
        "tps": [2, 0],
    }
    assert CalculatedMetrics.from_dict(data) == calculate_run_metrics(_run(1500.0, (200.0, 2)))
