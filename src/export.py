from __future__ import annotations

import csv
from datetime import datetime, timezone
import io
import json
import logging
from math import floor
from pathlib import Path
from typing import Any

from config import BenchmarkConfig
from metrics import SCALAR_FIELDS, WIRE_NAMES, CalculatedMetrics, StatsResult


logger = logging.getLogger(__name__)

CSV_LABELS = {
    "ttft": "TTFT (ms)",
    "total_time": "Total Time (ms)",
    "total_tokens": "Total Tokens",
    "average_speed": "Average Speed (tokens/s)",
    "peak_speed": "Peak Speed (tokens/s)",
    "peak_tps": "Peak TPS",
}
# Token counts of individual runs (and their min/max) stay integers.
_INTEGER_FIELDS = {"total_tokens"}


def round2(value: float) -> float:
    """Round half up to two decimals."""
    return floor(value * 100 + 0.5) / 100


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds")


def _export_metrics(metrics: CalculatedMetrics, keep_integers: bool) -> dict[str, Any]:
    exported: dict[str, Any] = {}
    for name in SCALAR_FIELDS:
        value = getattr(metrics, name)
        if keep_integers and name in _INTEGER_FIELDS:
            exported[WIRE_NAMES[name]] = value
        else:
            exported[WIRE_NAMES[name]] = round2(value)
    return exported


def _export_percentile(stats: StatsResult, key: str) -> dict[str, float]:
    return {
        WIRE_NAMES[name]: round2(getattr(stats.percentiles[WIRE_NAMES[name]], key))
        for name in SCALAR_FIELDS
    }


def generate_json_export(
    config: BenchmarkConfig,
    results: list[CalculatedMetrics],
    stats: StatsResult,
    timestamp: str | None = None,
) -> str:
    runs = []
    for result in results:
        run = _export_metrics(result, keep_integers=True)
        run["tps"] = list(result.tps)
        runs.append(run)

    payload = {
        "timestamp": timestamp or _now_iso(),
        "config": {
            "provider": config.provider,
            "model": config.model,
            "maxTokens": config.max_tokens,
            "runCount": config.run_count,
            "prompt": config.prompt,
        },
        "runs": runs,
        "stats": {
            "mean": _export_metrics(stats.mean, keep_integers=False),
            "min": _export_metrics(stats.min, keep_integers=True),
            "max": _export_metrics(stats.max, keep_integers=True),
            "stdDev": _export_metrics(stats.std_dev, keep_integers=False),
            "p50": _export_percentile(stats, "p50"),
            "p95": _export_percentile(stats, "p95"),
            "p99": _export_percentile(stats, "p99"),
            "sampleSize": stats.sample_size,
        },
    }
    return json.dumps(payload, ensure_ascii=False, indent=2)


def _format_cell(value: float, name: str, keep_integers: bool) -> str:
    if keep_integers and name in _INTEGER_FIELDS:
        return str(value)
    return f"{value:.2f}"


def generate_csv_export(
    config: BenchmarkConfig,
    results: list[CalculatedMetrics],
    stats: StatsResult,
    timestamp: str | None = None,
) -> str:
    buffer = io.StringIO()
    buffer.write("# Token Speed Test Results\n")
    buffer.write(f"# Timestamp: {timestamp or _now_iso()}\n")
    buffer.write(f"# Provider: {config.provider}\n")
    buffer.write(f"# Model: {config.model}\n")
    buffer.write(f"# Runs: {config.run_count}\n")
    buffer.write(f"# Prompt: {' '.join(config.prompt.splitlines())}\n")
    buffer.write("\n# Statistics\n")

    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(["Metric", "Mean", "P50", "P95", "P99", "Min", "Max"])
    for name in SCALAR_FIELDS:
        summary = stats.percentiles[WIRE_NAMES[name]]
        writer.writerow(
            [
                CSV_LABELS[name],
                f"{getattr(stats.mean, name):.2f}",
                f"{summary.p50:.2f}",
                f"{summary.p95:.2f}",
                f"{summary.p99:.2f}",
                _format_cell(getattr(stats.min, name), name, keep_integers=True),
                _format_cell(getattr(stats.max, name), name, keep_integers=True),
            ]
        )

    buffer.write("\n# Individual Runs\n")
    writer.writerow(["Run", *(CSV_LABELS[name] for name in SCALAR_FIELDS)])
    for index, result in enumerate(results, start=1):
        writer.writerow(
            [
                index,
                *(
                    _format_cell(getattr(result, name), name, keep_integers=True)
                    for name in SCALAR_FIELDS
                ),
            ]
        )
    return buffer.getvalue().rstrip("\n")


def write_report(path: Path, content: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content + "\n", encoding="utf-8")
    logger.debug("Wrote report to %s", path)
    return path
