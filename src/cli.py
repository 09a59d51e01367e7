from __future__ import annotations

from datetime import datetime
import json
import logging
import os
from pathlib import Path
import sys
import time
import uuid

import typer

from config import BenchmarkConfig, load_benchmark_defaults
from export import generate_csv_export, generate_json_export, write_report
from html_report import generate_html_report
from messages import Messages, resolve_messages, supported_langs
from metrics import (
    SCALAR_FIELDS,
    WIRE_NAMES,
    CalculatedMetrics,
    EmptyBatchError,
    EmptyRunError,
    StatsResult,
    calculate_aggregate_stats,
    calculate_run_metrics,
)
from providers import ProviderConfig, ProviderRegistry
from records import RawRun
from runner import BenchmarkRunner, LiteLLMClient, RunRecorder, count_chunk_tokens
from storage import BenchmarkStorage


logger = logging.getLogger(__name__)


def _setup_logging() -> None:
    """Configure root logger from TOKEN_SPEED_LOG_LEVEL env var (default: WARNING)."""
    level_name = os.environ.get("TOKEN_SPEED_LOG_LEVEL", "WARNING").upper()
    level = getattr(logging, level_name, logging.WARNING)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stderr,
    )


app = typer.Typer(no_args_is_help=True, help="LLM API streaming token speed benchmark")
provider_app = typer.Typer(no_args_is_help=True, help="Provider management commands")
report_app = typer.Typer(no_args_is_help=True, help="Report commands")
app.add_typer(provider_app, name="provider")
app.add_typer(report_app, name="report")


DEFAULT_CONFIG = Path("token-speed.toml")
DEFAULT_BENCH_DB = Path("token-speed.duckdb")


class _RunProgress:
    def __init__(self, total_runs: int, enabled: bool = True) -> None:
        self.total_runs = total_runs
        self.enabled = enabled

    def on_run_complete(
        self, run_index: int, raw_run: RawRun, run_metrics: CalculatedMetrics | None
    ) -> None:
        if not self.enabled:
            return
        prefix = f"[run {run_index + 1}/{self.total_runs}]"
        if run_metrics is None:
            reason = raw_run.error_type or "no tokens received"
            typer.echo(f"{prefix} excluded ({reason})", err=True)
            return
        typer.echo(
            (
                f"{prefix} ttft={run_metrics.ttft:.0f}ms "
                f"total={run_metrics.total_time:.0f}ms "
                f"tokens={run_metrics.total_tokens} "
                f"speed={run_metrics.average_speed:.2f} tok/s "
                f"peak={run_metrics.peak_speed:.0f} tok/s"
            ),
            err=True,
        )


def _resolve_messages_or_exit(lang: str) -> Messages:
    try:
        return resolve_messages(lang)
    except KeyError:
        typer.echo(
            f"Unsupported language: {lang}. Use one of {', '.join(supported_langs())}."
        )
        raise typer.Exit(1)


def _render_report(
    config: BenchmarkConfig,
    results: list[CalculatedMetrics],
    stats: StatsResult,
    output_format: str,
    messages: Messages,
    excluded_runs: list[str],
) -> str:
    if output_format == "json":
        return generate_json_export(config, results, stats)
    if output_format == "csv":
        return generate_csv_export(config, results, stats)
    return generate_html_report(
        config=config,
        results=results,
        stats=stats,
        lang=config.lang,
        messages=messages,
        excluded_runs=excluded_runs,
    )


def _render_stats_summary(
    session_id: str,
    config: BenchmarkConfig,
    stats: StatsResult,
    run_total: int,
    excluded_runs: list[str],
    messages: Messages,
) -> str:
    headers = messages["stats_headers"]
    labels = messages["stats_labels"]
    columns = ("mean", "min", "max", "std_dev", "p50", "p95", "p99")
    lines = [
        "Token speed summary",
        f"Session : {session_id}",
        f"Provider: {config.provider} ({config.model})",
        f"Runs    : {stats.sample_size}/{run_total} included",
        "",
        f"{headers['metric']:<16}" + "".join(f"{headers[column]:>12}" for column in columns),
    ]
    for name in SCALAR_FIELDS:
        summary = stats.percentiles[WIRE_NAMES[name]]
        values = (
            getattr(stats.mean, name),
            getattr(stats.min, name),
            getattr(stats.max, name),
            getattr(stats.std_dev, name),
            summary.p50,
            summary.p95,
            summary.p99,
        )
        lines.append(
            f"{labels[name]:<16}" + "".join(f"{value:>12.2f}" for value in values)
        )
    if excluded_runs:
        lines.extend(["", f"{messages['excluded_runs']}:"])
        lines.extend(f"- {reason}" for reason in excluded_runs)
    return "\n".join(lines)


def _summarize_raw_runs(
    raw_runs: list[RawRun],
) -> tuple[list[CalculatedMetrics], list[str]]:
    results: list[CalculatedMetrics] = []
    excluded: list[str] = []
    for run_index, raw_run in enumerate(raw_runs, start=1):
        try:
            results.append(calculate_run_metrics(raw_run))
        except EmptyRunError as exc:
            reason = (
                f"{raw_run.error_type}: {raw_run.error_message}"
                if raw_run.error_type
                else str(exc)
            )
            excluded.append(f"run {run_index}: {reason}")
    return results, excluded


def _latest_session_id(storage: BenchmarkStorage) -> str:
    sessions = storage.list_sessions()
    if not sessions:
        typer.echo("No sessions found.")
        raise typer.Exit(1)
    return str(sessions[0]["session_id"])


def _load_session(
    storage: BenchmarkStorage, session_id: str
) -> tuple[BenchmarkConfig, list[RawRun], list[CalculatedMetrics], StatsResult, list[str]]:
    try:
        config = storage.get_session_config(session_id)
    except KeyError:
        typer.echo(f"Session not found: {session_id}")
        raise typer.Exit(1)

    raw_runs = storage.load_raw_runs(session_id)
    results, excluded = _summarize_raw_runs(raw_runs)
    try:
        stats = calculate_aggregate_stats(results)
    except EmptyBatchError:
        typer.echo(f"Session {session_id} has no runs with tokens; no statistics available.")
        raise typer.Exit(1)
    return config, raw_runs, results, stats, excluded


def _format_timestamp(value: object) -> str:
    if value is None:
        return "-"
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return "-"
    return datetime.fromtimestamp(numeric).astimezone().isoformat(timespec="seconds")


def _format_duration(value: object) -> str:
    if value is None:
        return "-"
    try:
        return f"{float(value):.3f}s"
    except (TypeError, ValueError):
        return "-"


def _render_session_list(sessions: list[dict[str, object]], db: Path) -> str:
    lines = [
        "Benchmark sessions",
        f"Total : {len(sessions)}",
        f"DB    : {db}",
        "",
        "Sessions:",
    ]
    for session in sessions:
        lines.append(
            (
                f"- {session.get('session_id', '-')} "
                f"started={_format_timestamp(session.get('started_at'))} "
                f"duration={_format_duration(session.get('duration_s'))} "
                f"provider={session.get('provider_name', '-')} "
                f"model={session.get('model', '-')} "
                f"runs={int(session.get('run_count') or 0)} "
                f"fail={int(session.get('failed_count') or 0)} "
                f"tokens={int(session.get('token_count') or 0)}"
            )
        )
    return "\n".join(lines)


@provider_app.command("add")
def provider_add(
    name: str = typer.Option(..., "--name", help="Provider name"),
    model: str = typer.Option(..., "--model", help="Model identifier (LiteLLM format)"),
    api_base: str | None = typer.Option(None, "--api-base", help="Provider base URL"),
    api_key_env: str | None = typer.Option(
        None, "--api-key-env", help="Environment variable storing API key"
    ),
    max_tokens: int | None = typer.Option(
        None, "--max-tokens", min=1, help="Default max tokens for this provider"
    ),
    timeout_s: float | None = typer.Option(
        None, "--timeout-s", help="Request timeout in seconds"
    ),
    config: Path = typer.Option(
        DEFAULT_CONFIG, "--config", help="Config file", hidden=True
    ),
) -> None:
    registry = ProviderRegistry(config)
    try:
        registry.save_provider(
            ProviderConfig(
                name=name,
                model=model,
                api_base=api_base,
                api_key_env=api_key_env,
                max_tokens=max_tokens,
                timeout_s=timeout_s,
            )
        )
    except ValueError as exc:
        typer.echo(f"Invalid provider: {exc}")
        raise typer.Exit(1)
    logger.debug("Provider %r added to %s", name, config)
    typer.echo(f"Provider added: {name}")


@provider_app.command("list")
def provider_list(
    config: Path = typer.Option(
        DEFAULT_CONFIG, "--config", help="Config file", hidden=True
    ),
) -> None:
    providers = ProviderRegistry(config).list_providers()
    if not providers:
        typer.echo("No providers configured.")
        return

    for provider in providers:
        api_base = provider.api_base or "-"
        api_key_env = provider.api_key_env or "-"
        typer.echo(f"{provider.name}\t{provider.model}\t{api_base}\t{api_key_env}")


@provider_app.command("remove")
def provider_remove(
    name: str = typer.Option(..., "--name", help="Provider name"),
    config: Path = typer.Option(
        DEFAULT_CONFIG, "--config", help="Config file", hidden=True
    ),
) -> None:
    try:
        ProviderRegistry(config).remove_provider(name)
    except KeyError:
        typer.echo(f"Provider not found: {name}")
        raise typer.Exit(1)
    typer.echo(f"Provider removed: {name}")


@app.command("run")
def run_benchmark(
    provider: str | None = typer.Option(
        None, "--provider", help="Provider name. Defaults to the first configured provider."
    ),
    runs: int | None = typer.Option(None, "--runs", "-n", min=1, help="Number of runs"),
    prompt: str | None = typer.Option(None, "--prompt", "-p", help="Prompt to send"),
    max_tokens: int | None = typer.Option(
        None, "--max-tokens", min=1, help="Max tokens per response"
    ),
    lang: str | None = typer.Option(None, "--lang", help="Report language (en or zh)"),
    output_format: str | None = typer.Option(
        None, "--format", "-f", help="Report format: json, csv or html"
    ),
    output: Path | None = typer.Option(None, "--output", "-o", help="Report output path"),
    db: Path = typer.Option(DEFAULT_BENCH_DB, "--db", "-d", help="DuckDB output file"),
    strict: bool = typer.Option(
        False, "--strict", help="Abort when a run produces no tokens instead of excluding it"
    ),
    json_output: bool = typer.Option(
        False, "--json", help="Output machine-readable JSON"
    ),
    progress: bool = typer.Option(
        True, "--progress/--no-progress", help="Show per-run progress on stderr"
    ),
    config: Path = typer.Option(
        DEFAULT_CONFIG, "--config", help="Config file", hidden=True
    ),
    session_id: str | None = typer.Option(
        None, "--session-id", help="Optional session id", hidden=True
    ),
) -> None:
    registry = ProviderRegistry(config)
    try:
        defaults = load_benchmark_defaults(config)
        if provider:
            provider_config = registry.get_provider(provider)
        else:
            configured = registry.list_providers()
            if not configured:
                typer.echo(
                    "No providers configured. Add one with `token-speed provider add`."
                )
                raise typer.Exit(1)
            provider_config = configured[0]
    except KeyError:
        typer.echo(f"Provider not found: {provider}")
        raise typer.Exit(1)
    except ValueError as exc:
        typer.echo(f"Invalid configuration: {exc}")
        raise typer.Exit(1)

    bench_config = BenchmarkConfig(
        provider=provider_config.name,
        model=provider_config.model,
        max_tokens=max_tokens or provider_config.max_tokens or defaults.max_tokens,
        run_count=runs or defaults.run_count,
        prompt=prompt or defaults.prompt,
        lang=(lang or defaults.lang).lower(),
        output_format=(output_format or defaults.output_format).lower(),
        output_path=output,
    )
    try:
        bench_config.validate()
    except ValueError as exc:
        typer.echo(f"Invalid configuration: {exc}")
        raise typer.Exit(1)
    messages = _resolve_messages_or_exit(bench_config.lang)

    actual_session_id = session_id or f"session-{uuid.uuid4().hex[:8]}"
    run_progress = _RunProgress(total_runs=bench_config.run_count, enabled=progress)
    storage = BenchmarkStorage(db)
    logger.info(
        "Starting session %s: provider=%r model=%s runs=%d max_tokens=%d",
        actual_session_id, provider_config.name, provider_config.model,
        bench_config.run_count, bench_config.max_tokens,
    )
    try:
        storage.create_session(
            session_id=actual_session_id, started_at=time.time(), config=bench_config
        )
        runner = BenchmarkRunner(
            storage=storage,
            recorder=RunRecorder(client=LiteLLMClient(), token_counter=count_chunk_tokens),
        )
        try:
            result = runner.run(
                session_id=actual_session_id,
                provider=provider_config,
                prompt=bench_config.prompt,
                run_count=bench_config.run_count,
                max_tokens=bench_config.max_tokens,
                strict=strict,
                on_run_complete=run_progress.on_run_complete,
            )
        except EmptyRunError as exc:
            typer.echo(f"Benchmark aborted: {exc}")
            raise typer.Exit(1)
        except EmptyBatchError:
            typer.echo("Every run failed to produce tokens; no statistics available.")
            raise typer.Exit(1)
        finally:
            storage.finish_session(session_id=actual_session_id, finished_at=time.time())
    finally:
        storage.close()
    logger.info("Session %s finished", actual_session_id)

    excluded = [
        f"run {failure.run_index + 1}: {failure.reason}" for failure in result.failures
    ]
    report_path = write_report(
        bench_config.resolved_output_path(actual_session_id),
        _render_report(
            config=bench_config,
            results=result.metrics,
            stats=result.stats,
            output_format=bench_config.output_format,
            messages=messages,
            excluded_runs=excluded,
        ),
    )

    if json_output:
        typer.echo(
            json.dumps(
                {
                    "session_id": actual_session_id,
                    "provider": provider_config.name,
                    "report": str(report_path),
                    "db": str(db),
                    "excluded_runs": excluded,
                    "stats": result.stats.to_dict(),
                },
                ensure_ascii=False,
            )
        )
        return

    typer.echo(
        _render_stats_summary(
            session_id=actual_session_id,
            config=bench_config,
            stats=result.stats,
            run_total=len(result.raw_runs),
            excluded_runs=excluded,
            messages=messages,
        )
    )
    typer.echo(f"\nReport: {report_path}")


@report_app.command("summary")
def report_summary(
    session_id: str | None = typer.Option(
        None, "--session-id", help="Session identifier. Defaults to latest session."
    ),
    lang: str | None = typer.Option(None, "--lang", help="Label language (en or zh)"),
    json_output: bool = typer.Option(
        False, "--json", help="Output machine-readable JSON"
    ),
    db: Path = typer.Option(DEFAULT_BENCH_DB, "--db", "-d", help="DuckDB output file"),
) -> None:
    storage = BenchmarkStorage(db)
    try:
        actual_session_id = session_id or _latest_session_id(storage)
        config, raw_runs, results, stats, excluded = _load_session(
            storage, actual_session_id
        )
    finally:
        storage.close()

    if json_output:
        typer.echo(
            json.dumps(
                {
                    "session_id": actual_session_id,
                    "config": config.to_dict(),
                    "runs": [result.to_dict() for result in results],
                    "excluded_runs": excluded,
                    "stats": stats.to_dict(),
                },
                ensure_ascii=False,
            )
        )
        return

    messages = _resolve_messages_or_exit((lang or config.lang).lower())
    typer.echo(
        _render_stats_summary(
            session_id=actual_session_id,
            config=config,
            stats=stats,
            run_total=len(raw_runs),
            excluded_runs=excluded,
            messages=messages,
        )
    )


@report_app.command("export")
def report_export(
    session_id: str | None = typer.Option(
        None, "--session-id", help="Session identifier. Defaults to latest session."
    ),
    output_format: str | None = typer.Option(
        None, "--format", "-f", help="Report format: json, csv or html"
    ),
    output: Path | None = typer.Option(None, "--output", "-o", help="Report output path"),
    lang: str | None = typer.Option(None, "--lang", help="Report language (en or zh)"),
    db: Path = typer.Option(DEFAULT_BENCH_DB, "--db", "-d", help="DuckDB output file"),
) -> None:
    storage = BenchmarkStorage(db)
    try:
        actual_session_id = session_id or _latest_session_id(storage)
        config, _, results, stats, excluded = _load_session(storage, actual_session_id)
    finally:
        storage.close()

    if output_format:
        config.output_format = output_format.lower()
    if lang:
        config.lang = lang.lower()
    config.output_path = output
    try:
        config.validate()
    except ValueError as exc:
        typer.echo(f"Invalid configuration: {exc}")
        raise typer.Exit(1)

    report_path = write_report(
        config.resolved_output_path(actual_session_id),
        _render_report(
            config=config,
            results=results,
            stats=stats,
            output_format=config.output_format,
            messages=_resolve_messages_or_exit(config.lang),
            excluded_runs=excluded,
        ),
    )
    typer.echo(f"Report written: {report_path}")


@report_app.command("list")
def report_list(
    limit: int | None = typer.Option(
        None, "--limit", "-n", min=1, help="Maximum number of sessions to show"
    ),
    json_output: bool = typer.Option(
        False, "--json", help="Output machine-readable JSON"
    ),
    db: Path = typer.Option(DEFAULT_BENCH_DB, "--db", "-d", help="DuckDB output file"),
) -> None:
    storage = BenchmarkStorage(db)
    try:
        sessions = storage.list_sessions_with_stats()
    finally:
        storage.close()

    if not sessions:
        typer.echo("No sessions found.")
        raise typer.Exit(1)
    if limit is not None:
        sessions = sessions[:limit]

    if json_output:
        for session in sessions:
            session["started_at_iso"] = _format_timestamp(session.get("started_at"))
            session["finished_at_iso"] = _format_timestamp(session.get("finished_at"))
        typer.echo(
            json.dumps(
                {"db": str(db), "total": len(sessions), "sessions": sessions},
                ensure_ascii=False,
            )
        )
        return

    typer.echo(_render_session_list(sessions, db=db))


@report_app.command("remove")
def report_remove(
    session_id: str = typer.Option(..., "--session-id", help="Session identifier to remove"),
    db: Path = typer.Option(DEFAULT_BENCH_DB, "--db", "-d", help="DuckDB output file"),
) -> None:
    storage = BenchmarkStorage(db)
    try:
        deleted = storage.delete_session(session_id=session_id)
    finally:
        storage.close()
    if not deleted:
        typer.echo(f"Session not found: {session_id}")
        raise typer.Exit(1)
    typer.echo(f"Session removed: {session_id}")


def main() -> None:
    _setup_logging()
    app()


if __name__ == "__main__":
    main()
