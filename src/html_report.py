from __future__ import annotations

from datetime import datetime
from typing import Any

from jinja2 import Environment

from config import BenchmarkConfig
from messages import Messages
from metrics import SCALAR_FIELDS, WIRE_NAMES, CalculatedMetrics, StatsResult


PALETTE = {
    "bg": "#0a0a0f",
    "bg_secondary": "#12121a",
    "bg_card": "#1a1a24",
    "border": "#2a2a3a",
    "text": "#e4e4eb",
    "text_muted": "#6a6a7a",
    "accent": "#00f5ff",
    "accent_secondary": "#ff00aa",
    "accent_tertiary": "#ffcc00",
}
CHART_COLORS = ("#00f5ff", "#ff00aa", "#ffcc00", "#00ff88", "#ff6600", "#aa00ff")
TIME_FIELDS = {"ttft", "total_time"}


def format_number(value: float, decimals: int = 2) -> str:
    return f"{value:.{decimals}f}"


def format_time(ms: float) -> str:
    if ms < 1000:
        return f"{ms:.0f}ms"
    return f"{ms / 1000:.2f}s"


def _format_field(name: str, value: float) -> str:
    if name in TIME_FIELDS:
        return format_time(value)
    if name == "total_tokens":
        return format_number(value, 1)
    return format_number(value)


def _y_ticks(max_value: float, top: float, height: float, steps: int = 5) -> list[dict[str, Any]]:
    return [
        {
            "value": round(max_value * step / steps),
            "y": top + height - (step / steps) * height,
        }
        for step in range(steps + 1)
    ]


def _x_ticks(count: int, left: float, width: float, max_steps: int) -> list[dict[str, Any]]:
    # Ticks are spread over the whole axis, so labels name the second they land on.
    steps = min(count, max_steps)
    return [
        {
            "label": round(step * (count - 1) / max(steps - 1, 1)),
            "x": left + (step / max(steps - 1, 1)) * width,
        }
        for step in range(steps)
    ]


def build_speed_chart(
    results: list[CalculatedMetrics], mean_tps: list[float]
) -> dict[str, Any] | None:
    """Geometry of the per-run TPS line chart, or ``None`` without data."""
    all_tps = [value for result in results for value in result.tps]
    if not all_tps:
        return None

    width, height = 800, 320
    top, right, bottom, left = 30, 30, 45, 55
    chart_width = width - left - right
    chart_height = height - top - bottom
    max_tps = max(max(all_tps), 1)
    duration = max(len(result.tps) for result in results)

    def point(index: int, value: float) -> tuple[float, float]:
        x = left + (index / max(duration - 1, 1)) * chart_width
        y = top + chart_height - (value / max_tps) * chart_height
        return x, y

    lines = []
    for run_index, result in enumerate(results):
        points = [point(index, value) for index, value in enumerate(result.tps)]
        area = [(left, height - bottom), *points, (left + chart_width, height - bottom)]
        lines.append(
            {
                "run": run_index + 1,
                "color": CHART_COLORS[run_index % len(CHART_COLORS)],
                "points": " ".join(f"{x},{y}" for x, y in points),
                "area": " ".join(f"{x},{y}" for x, y in area),
                "dots": [
                    {"x": x, "y": y, "second": index, "tps": result.tps[index]}
                    for index, (x, y) in enumerate(points)
                ],
            }
        )

    return {
        "width": width,
        "height": height,
        "left": left,
        "top": top,
        "bottom": height - bottom,
        "right": width - right,
        "chart_width": chart_width,
        "chart_height": chart_height,
        "lines": lines,
        "mean_points": " ".join(
            f"{x},{y}" for x, y in (point(i, v) for i, v in enumerate(mean_tps))
        ),
        "y_ticks": _y_ticks(max_tps, top, chart_height),
        "x_ticks": _x_ticks(duration, left, chart_width, max_steps=10),
    }


def build_tps_histogram(mean_tps: list[float]) -> dict[str, Any] | None:
    if not mean_tps:
        return None

    width, height = 400, 280
    top, right, bottom, left = 25, 20, 40, 50
    chart_width = width - left - right
    chart_height = height - top - bottom
    max_tps = max(max(mean_tps), 1)

    bars = []
    for index, value in enumerate(mean_tps):
        bar_height = (value / max_tps) * chart_height
        bars.append(
            {
                "x": left + (index / len(mean_tps)) * chart_width,
                "y": top + chart_height - bar_height,
                "width": chart_width / len(mean_tps) - 2,
                "height": bar_height,
                "second": index,
                "tps": value,
                "hue": 180 + (value / max_tps) * 60,
            }
        )

    return {
        "width": width,
        "height": height,
        "left": left,
        "top": top,
        "bottom": height - bottom,
        "right": width - right,
        "chart_width": chart_width,
        "chart_height": chart_height,
        "bars": bars,
        "y_ticks": _y_ticks(max_tps, top, chart_height),
        "x_ticks": _x_ticks(len(mean_tps), left, chart_width, max_steps=8),
    }


def _card_value(value: float, decimals: int | None) -> str:
    if decimals is None:
        return format_time(value)
    return format_number(value, decimals)


def _summary_cards(stats: StatsResult, messages: Messages) -> list[dict[str, str]]:
    labels = messages["stats_labels"]
    headers = messages["stats_headers"]
    cards = []
    for name, accent, unit, decimals in (
        ("ttft", PALETTE["accent"], "", None),
        ("average_speed", PALETTE["accent_secondary"], messages["html_speed"], 2),
        ("peak_speed", PALETTE["accent_tertiary"], messages["html_speed"], 2),
        ("total_tokens", "#00ff88", "", 0),
    ):
        low = _card_value(getattr(stats.min, name), decimals)
        high = _card_value(getattr(stats.max, name), decimals)
        cards.append(
            {
                "label": labels[name],
                "value": _card_value(getattr(stats.mean, name), decimals),
                "unit": unit,
                "detail": f"{headers['min']}: {low} · {headers['max']}: {high}",
                "accent": accent,
            }
        )
    return cards


def _stats_rows(stats: StatsResult, messages: Messages) -> list[dict[str, str]]:
    rows = []
    for name in SCALAR_FIELDS:
        summary = stats.percentiles[WIRE_NAMES[name]]
        rows.append(
            {
                "metric": messages["stats_labels"][name],
                "mean": _format_field(name, getattr(stats.mean, name)),
                "min": _format_field(name, getattr(stats.min, name)),
                "max": _format_field(name, getattr(stats.max, name)),
                "std_dev": _format_field(name, getattr(stats.std_dev, name)),
                "p50": _format_field(name, summary.p50),
                "p95": _format_field(name, summary.p95),
                "p99": _format_field(name, summary.p99),
            }
        )
    return rows


def _detail_rows(results: list[CalculatedMetrics]) -> list[dict[str, Any]]:
    return [
        {
            "run": index,
            "ttft": format_time(result.ttft),
            "total_time": format_time(result.total_time),
            "total_tokens": result.total_tokens,
            "average_speed": format_number(result.average_speed),
            "peak_speed": format_number(result.peak_speed),
            "peak_tps": format_number(result.peak_tps, 0),
        }
        for index, result in enumerate(results, start=1)
    ]


def generate_html_report(
    config: BenchmarkConfig,
    results: list[CalculatedMetrics],
    stats: StatsResult,
    lang: str,
    messages: Messages,
    generated_at: datetime | None = None,
    excluded_runs: list[str] | None = None,
) -> str:
    """Render a self-contained HTML dashboard for one benchmark session.

    ``messages`` is the label table of ``lang``; nothing is looked up globally.
    """
    generated_at = generated_at or datetime.now().astimezone()
    return _TEMPLATE.render(
        lang=lang,
        m=messages,
        palette=PALETTE,
        config=config,
        test_time=generated_at.strftime("%Y-%m-%d %H:%M:%S"),
        cards=_summary_cards(stats, messages),
        stats_title=messages["stats_summary_title"].format(count=stats.sample_size),
        stats_rows=_stats_rows(stats, messages),
        detail_rows=_detail_rows(results),
        speed_chart=build_speed_chart(results, stats.mean.tps),
        tps_chart=build_tps_histogram(stats.mean.tps),
        excluded_runs=excluded_runs or [],
    )


REPORT_TEMPLATE = """<!DOCTYPE html>
<html lang="{{ lang }}">
<head>
  <meta charset="UTF-8">
  <meta name="viewport" content="width=device-width, initial-scale=1.0">
  <title>{{ m.html_title }}</title>
  <style>
    :root {
      --bg: {{ palette.bg }};
      --bg-secondary: {{ palette.bg_secondary }};
      --bg-card: {{ palette.bg_card }};
      --border: {{ palette.border }};
      --text: {{ palette.text }};
      --text-muted: {{ palette.text_muted }};
      --accent: {{ palette.accent }};
    }
    * { box-sizing: border-box; margin: 0; padding: 0; }
    body {
      font-family: "JetBrains Mono", "SFMono-Regular", Menlo, monospace;
      background: var(--bg);
      color: var(--text);
      line-height: 1.6;
    }
    .container { max-width: 1280px; margin: 0 auto; padding: 40px 24px; }
    header { border: 1px solid var(--border); padding: 32px; margin-bottom: 32px; background: var(--bg-secondary); }
    header h1 { font-size: 2rem; color: var(--accent); }
    header .subtitle { color: var(--text-muted); font-size: 0.85rem; }
    .section { background: var(--bg-secondary); border: 1px solid var(--border); padding: 24px; margin-bottom: 24px; }
    .section-title { color: var(--accent); text-transform: uppercase; letter-spacing: 0.1em; margin-bottom: 16px; }
    .config-grid, .summary-cards { display: grid; grid-template-columns: repeat(4, 1fr); gap: 16px; }
    .config-item { background: var(--bg-card); padding: 12px 16px; display: flex; flex-direction: column; }
    .config-item.wide { grid-column: 1 / -1; }
    .config-label, .card-label { color: var(--text-muted); font-size: 0.75rem; text-transform: uppercase; }
    .card { background: var(--bg-card); padding: 20px; border-top: 3px solid var(--card-accent); }
    .card-value { font-size: 1.8rem; font-weight: 700; color: var(--card-accent); }
    .card-unit { font-size: 0.8rem; color: var(--text-muted); margin-left: 6px; }
    .card-detail { font-size: 0.75rem; color: var(--text-muted); }
    .charts-container { display: grid; grid-template-columns: 2fr 1fr; gap: 24px; }
    .chart-wrapper { background: var(--bg-card); padding: 16px; }
    .chart-title { color: var(--text-muted); margin-bottom: 8px; }
    .chart { width: 100%; height: auto; }
    .chart-legend { display: flex; flex-wrap: wrap; gap: 12px; font-size: 0.75rem; margin-top: 8px; }
    .legend-line { display: inline-block; width: 18px; height: 3px; vertical-align: middle; margin-right: 6px; }
    .legend-line.avg { background: var(--text); }
    .no-data { color: var(--text-muted); text-align: center; padding: 48px 0; }
    .table-wrapper { overflow-x: auto; }
    table { width: 100%; border-collapse: collapse; font-size: 0.85rem; }
    th, td { padding: 10px 14px; text-align: left; border-bottom: 1px solid var(--border); }
    th { color: var(--text-muted); text-transform: uppercase; font-size: 0.7rem; }
    .run-badge { background: var(--accent); color: var(--bg); padding: 2px 8px; font-weight: 700; }
    .value-primary { color: var(--accent); font-weight: 600; }
    footer { text-align: center; color: var(--text-muted); font-size: 0.75rem; padding: 24px 0; }
    @media (max-width: 1024px) {
      .config-grid, .summary-cards { grid-template-columns: repeat(2, 1fr); }
      .charts-container { grid-template-columns: 1fr; }
    }
  </style>
</head>
<body>
  <div class="container">
    <header>
      <h1>{{ m.html_report_title }}</h1>
      <div class="subtitle">{{ m.html_test_time }}: {{ test_time }}</div>
    </header>

    <section class="section">
      <div class="section-title">// {{ m.html_config_section }}</div>
      <div class="config-grid">
        <div class="config-item">
          <span class="config-label">{{ m.config_labels.provider }}</span>
          <span class="config-value">{{ config.provider | upper }}</span>
        </div>
        <div class="config-item">
          <span class="config-label">{{ m.config_labels.model }}</span>
          <span class="config-value">{{ config.model }}</span>
        </div>
        <div class="config-item">
          <span class="config-label">{{ m.config_labels.max_tokens }}</span>
          <span class="config-value">{{ config.max_tokens }}</span>
        </div>
        <div class="config-item">
          <span class="config-label">{{ m.config_labels.runs }}</span>
          <span class="config-value">{{ config.run_count }}</span>
        </div>
        <div class="config-item wide">
          <span class="config-label">{{ m.config_labels.prompt }}</span>
          <span class="config-value">"{{ config.prompt }}"</span>
        </div>
      </div>
    </section>

    <section class="section">
      <div class="section-title">// {{ m.html_summary_section }}</div>
      <div class="summary-cards">
        {% for card in cards %}
        <div class="card" style="--card-accent: {{ card.accent }}">
          <div class="card-label">{{ card.label }}</div>
          <div class="card-value">{{ card.value }}<span class="card-unit">{{ card.unit }}</span></div>
          <div class="card-detail">{{ card.detail }}</div>
        </div>
        {% endfor %}
      </div>
    </section>

    <section class="section">
      <div class="section-title">// {{ m.html_charts_section }}</div>
      <div class="charts-container">
        <div class="chart-wrapper">
          <div class="chart-title">{{ m.speed_chart_title }}</div>
          {% if speed_chart %}
          {% set c = speed_chart %}
          <svg viewBox="0 0 {{ c.width }} {{ c.height }}" class="chart" id="speedChart">
            <rect x="{{ c.left }}" y="{{ c.top }}" width="{{ c.chart_width }}" height="{{ c.chart_height }}" fill="{{ palette.bg_card }}" rx="4"/>
            {% for tick in c.y_ticks %}
            <text x="{{ c.left - 12 }}" y="{{ tick.y + 4 }}" text-anchor="end" font-size="11" fill="{{ palette.text_muted }}">{{ tick.value }}</text>
            {% if not loop.first %}
            <line x1="{{ c.left }}" y1="{{ tick.y }}" x2="{{ c.right }}" y2="{{ tick.y }}" stroke="{{ palette.border }}" stroke-width="1" opacity="0.5"/>
            {% endif %}
            {% endfor %}
            {% for tick in c.x_ticks %}
            <text x="{{ tick.x }}" y="{{ c.bottom + 20 }}" text-anchor="middle" font-size="11" fill="{{ palette.text_muted }}">{{ tick.label }}{{ m.html_seconds_suffix }}</text>
            {% endfor %}
            <line x1="{{ c.left }}" y1="{{ c.top }}" x2="{{ c.left }}" y2="{{ c.bottom }}" stroke="{{ palette.border }}" stroke-width="2"/>
            <line x1="{{ c.left }}" y1="{{ c.bottom }}" x2="{{ c.right }}" y2="{{ c.bottom }}" stroke="{{ palette.border }}" stroke-width="2"/>
            {% for line in c.lines %}
            <polygon points="{{ line.area }}" fill="{{ line.color }}" fill-opacity="0.08"/>
            <polyline fill="none" stroke="{{ line.color }}" stroke-width="2.5" points="{{ line.points }}" class="line" data-run="{{ line.run }}"/>
            {% for dot in line.dots %}
            <circle cx="{{ dot.x }}" cy="{{ dot.y }}" r="4" fill="{{ palette.bg }}" stroke="{{ line.color }}" stroke-width="2"><title>{{ m.html_run }} {{ line.run }} · {{ dot.second }}{{ m.html_seconds_suffix }}: {{ "%.1f" | format(dot.tps) }}</title></circle>
            {% endfor %}
            {% endfor %}
            <polyline fill="none" stroke="{{ palette.text }}" stroke-width="2" stroke-dasharray="6,4" opacity="0.7" points="{{ c.mean_points }}" class="mean-line"/>
            <text x="{{ c.left + c.chart_width / 2 }}" y="{{ c.height - 8 }}" text-anchor="middle" font-size="11" fill="{{ palette.text_muted }}">TIME ({{ m.html_seconds_suffix }})</text>
          </svg>
          <div class="chart-legend">
            <div class="legend-item"><span class="legend-line avg"></span>{{ m.html_average_tps }}</div>
            {% for line in c.lines %}
            <div class="legend-item"><span class="legend-line" style="background: {{ line.color }};"></span>{{ m.html_run }} {{ line.run }}</div>
            {% endfor %}
          </div>
          {% else %}
          <div class="no-data">{{ m.no_chart_data }}</div>
          {% endif %}
        </div>
        <div class="chart-wrapper">
          <div class="chart-title">{{ m.html_tps_distribution }}</div>
          {% if tps_chart %}
          {% set c = tps_chart %}
          <svg viewBox="0 0 {{ c.width }} {{ c.height }}" class="chart" id="tpsChart">
            <rect x="{{ c.left }}" y="{{ c.top }}" width="{{ c.chart_width }}" height="{{ c.chart_height }}" fill="{{ palette.bg_card }}" rx="4"/>
            {% for tick in c.y_ticks %}
            <text x="{{ c.left - 10 }}" y="{{ tick.y + 4 }}" text-anchor="end" font-size="11" fill="{{ palette.text_muted }}">{{ tick.value }}</text>
            {% endfor %}
            {% for tick in c.x_ticks %}
            <text x="{{ tick.x }}" y="{{ c.bottom + 18 }}" text-anchor="middle" font-size="11" fill="{{ palette.text_muted }}">{{ tick.label }}{{ m.html_seconds_suffix }}</text>
            {% endfor %}
            <line x1="{{ c.left }}" y1="{{ c.top }}" x2="{{ c.left }}" y2="{{ c.bottom }}" stroke="{{ palette.border }}" stroke-width="2"/>
            <line x1="{{ c.left }}" y1="{{ c.bottom }}" x2="{{ c.right }}" y2="{{ c.bottom }}" stroke="{{ palette.border }}" stroke-width="2"/>
            {% for bar in c.bars %}
            <rect x="{{ bar.x }}" y="{{ bar.y }}" width="{{ bar.width }}" height="{{ bar.height }}" fill="hsl({{ bar.hue }}, 100%, 60%)" class="bar" data-second="{{ bar.second }}" data-tps="{{ "%.2f" | format(bar.tps) }}" rx="2"><title>{{ m.html_average_tps }} {{ bar.second }}{{ m.html_seconds_suffix }}: {{ "%.1f" | format(bar.tps) }}</title></rect>
            {% endfor %}
          </svg>
          {% else %}
          <div class="no-data">{{ m.no_tps_data }}</div>
          {% endif %}
        </div>
      </div>
    </section>

    <section class="section">
      <div class="section-title">// {{ stats_title }}</div>
      <div class="table-wrapper">
        <table>
          <thead>
            <tr>
              <th>{{ m.stats_headers.metric }}</th>
              <th>{{ m.stats_headers.mean }}</th>
              <th>{{ m.stats_headers.min }}</th>
              <th>{{ m.stats_headers.max }}</th>
              <th>{{ m.stats_headers.std_dev }}</th>
              <th>{{ m.stats_headers.p50 }}</th>
              <th>{{ m.stats_headers.p95 }}</th>
              <th>{{ m.stats_headers.p99 }}</th>
            </tr>
          </thead>
          <tbody>
            {% for row in stats_rows %}
            <tr>
              <td class="metric-name">{{ row.metric }}</td>
              <td class="value-primary">{{ row.mean }}</td>
              <td>{{ row.min }}</td>
              <td>{{ row.max }}</td>
              <td>{{ row.std_dev }}</td>
              <td>{{ row.p50 }}</td>
              <td>{{ row.p95 }}</td>
              <td>{{ row.p99 }}</td>
            </tr>
            {% endfor %}
          </tbody>
        </table>
      </div>
    </section>

    <section class="section">
      <div class="section-title">// {{ m.html_details_section }}</div>
      <div class="table-wrapper">
        <table>
          <thead>
            <tr>
              <th>{{ m.html_run }}</th>
              <th>{{ m.stats_labels.ttft }}</th>
              <th>{{ m.stats_labels.total_time }}</th>
              <th>{{ m.stats_labels.total_tokens }}</th>
              <th>{{ m.stats_labels.average_speed }}</th>
              <th>{{ m.stats_labels.peak_speed }}</th>
              <th>{{ m.stats_labels.peak_tps }}</th>
            </tr>
          </thead>
          <tbody>
            {% for row in detail_rows %}
            <tr>
              <td><span class="run-badge">{{ row.run }}</span></td>
              <td>{{ row.ttft }}</td>
              <td>{{ row.total_time }}</td>
              <td>{{ row.total_tokens }}</td>
              <td>{{ row.average_speed }}</td>
              <td>{{ row.peak_speed }}</td>
              <td>{{ row.peak_tps }}</td>
            </tr>
            {% endfor %}
          </tbody>
        </table>
      </div>
      {% if excluded_runs %}
      <div class="excluded">
        <div class="config-label">{{ m.excluded_runs }}</div>
        <ul>
          {% for reason in excluded_runs %}
          <li>{{ reason }}</li>
          {% endfor %}
        </ul>
      </div>
      {% endif %}
    </section>

    <footer>Generated by <strong>token-speed-test</strong> // LLM API Streaming Performance Tool</footer>
  </div>
</body>
</html>
"""

_TEMPLATE = Environment(
    autoescape=True, trim_blocks=True, lstrip_blocks=True
).from_string(REPORT_TEMPLATE)
