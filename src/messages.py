from __future__ import annotations

from typing import Any


Messages = dict[str, Any]

DEFAULT_LANG = "en"

MESSAGES: dict[str, Messages] = {
    "en": {
        "html_title": "Token Speed Test Report",
        "html_report_title": "LLM API Streaming Performance",
        "html_test_time": "Test time",
        "html_config_section": "Configuration",
        "html_summary_section": "Summary",
        "html_charts_section": "Charts",
        "html_details_section": "Run details",
        "html_run": "Run",
        "html_speed": "tokens/s",
        "html_average_tps": "Average TPS",
        "html_seconds_suffix": "s",
        "html_tps_distribution": "Mean TPS per second",
        "speed_chart_title": "Token speed over time",
        "stats_summary_title": "Statistics ({count} runs)",
        "no_chart_data": "No data available",
        "no_tps_data": "No TPS data available",
        "excluded_runs": "Excluded runs",
        "config_labels": {
            "provider": "Provider",
            "model": "Model",
            "max_tokens": "Max tokens",
            "runs": "Runs",
            "prompt": "Prompt",
        },
        "stats_headers": {
            "metric": "Metric",
            "mean": "Mean",
            "min": "Min",
            "max": "Max",
            "std_dev": "Std dev",
            "p50": "P50",
            "p95": "P95",
            "p99": "P99",
        },
        "stats_labels": {
            "ttft": "TTFT",
            "total_time": "Total time",
            "total_tokens": "Total tokens",
            "average_speed": "Average speed",
            "peak_speed": "Peak speed",
            "peak_tps": "Peak TPS",
        },
    },
    "zh": {
        "html_title": "Token 速度测试报告",
        "html_report_title": "LLM API 流式性能",
        "html_test_time": "测试时间",
        "html_config_section": "测试配置",
        "html_summary_section": "概览",
        "html_charts_section": "图表",
        "html_details_section": "单次运行详情",
        "html_run": "运行",
        "html_speed": "tokens/秒",
        "html_average_tps": "平均 TPS",
        "html_seconds_suffix": "秒",
        "html_tps_distribution": "每秒平均 TPS",
        "speed_chart_title": "Token 速度曲线",
        "stats_summary_title": "统计数据（{count} 次运行）",
        "no_chart_data": "暂无数据",
        "no_tps_data": "暂无 TPS 数据",
        "excluded_runs": "已排除的运行",
        "config_labels": {
            "provider": "服务商",
            "model": "模型",
            "max_tokens": "最大 Token 数",
            "runs": "运行次数",
            "prompt": "提示词",
        },
        "stats_headers": {
            "metric": "指标",
            "mean": "平均值",
            "min": "最小值",
            "max": "最大值",
            "std_dev": "标准差",
            "p50": "P50",
            "p95": "P95",
            "p99": "P99",
        },
        "stats_labels": {
            "ttft": "首 Token 延迟",
            "total_time": "总耗时",
            "total_tokens": "总 Token 数",
            "average_speed": "平均速度",
            "peak_speed": "峰值速度",
            "peak_tps": "峰值 TPS",
        },
    },
}


def supported_langs(catalog: dict[str, Messages] = MESSAGES) -> list[str]:
    return sorted(catalog)


def resolve_messages(lang: str, catalog: dict[str, Messages] = MESSAGES) -> Messages:
    if lang not in catalog:
        raise KeyError(lang)
    return catalog[lang]
