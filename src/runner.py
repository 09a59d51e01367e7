from __future__ import annotations

from dataclasses import dataclass, field, replace
import logging
import os
import time
from typing import Callable, Iterable, Protocol

from metrics import (
    CalculatedMetrics,
    EmptyRunError,
    StatsResult,
    calculate_aggregate_stats,
    calculate_run_metrics,
)
from providers import ProviderConfig
from records import RawRun, TokenEvent
from storage import BenchmarkStorage


logger = logging.getLogger(__name__)


class LLMClientProtocol(Protocol):
    def stream_completion(self, provider: ProviderConfig, prompt: str) -> Iterable[str]:
        ...


TokenCounter = Callable[[ProviderConfig, str], int]
RunCompleteCallback = Callable[[int, RawRun, CalculatedMetrics | None], None]


@dataclass(slots=True)
class RunFailure:
    run_index: int
    raw_run: RawRun
    reason: str


@dataclass(slots=True)
class BenchmarkResult:
    raw_runs: list[RawRun]
    metrics: list[CalculatedMetrics]
    stats: StatsResult
    failures: list[RunFailure] = field(default_factory=list)


class LiteLLMClient:
    @staticmethod
    def _configure_litellm() -> None:
        import litellm

        # Keep benchmark output clean by hiding LiteLLM guidance banners in error paths.
        litellm.suppress_debug_info = True

    def stream_completion(self, provider: ProviderConfig, prompt: str) -> Iterable[str]:
        self._configure_litellm()
        from litellm import completion

        request_options: dict[str, object] = {
            "model": provider.model,
            "messages": [{"role": "user", "content": prompt}],
            "stream": True,
        }

        if provider.api_base:
            request_options["api_base"] = provider.api_base
        if provider.api_key_env:
            api_key = os.getenv(provider.api_key_env)
            if not api_key:
                raise ValueError(f"Missing API key from environment variable {provider.api_key_env!r}")
            request_options["api_key"] = api_key
        if provider.extra_headers:
            request_options["extra_headers"] = provider.extra_headers
        if provider.temperature is not None:
            request_options["temperature"] = provider.temperature
        if provider.max_tokens is not None:
            request_options["max_tokens"] = provider.max_tokens
        if provider.timeout_s is not None:
            request_options["timeout"] = provider.timeout_s

        for chunk in completion(**request_options):
            token_text = self._extract_text_from_chunk(chunk)
            if token_text:
                yield token_text

    @staticmethod
    def _extract_text_from_chunk(chunk: object) -> str:
        # Supports both dict-style and object-style chunk payloads.
        if isinstance(chunk, dict):
            choices = chunk.get("choices") or []
            if not choices:
                return ""
            first_choice = choices[0] or {}
            content = (first_choice.get("delta") or {}).get("content")
            if content is None:
                content = first_choice.get("text")
            return str(content or "")

        choices = getattr(chunk, "choices", None)
        if not choices:
            return ""
        first_choice = choices[0]
        delta = getattr(first_choice, "delta", None)
        content = getattr(delta, "content", None) if delta is not None else None
        if content is None:
            content = getattr(first_choice, "text", None)
        return str(content or "")


def count_chunk_tokens(provider: ProviderConfig, text: str) -> int:
    """Tokens in one streamed chunk, falling back to 1 when the model has no tokenizer."""
    if not text:
        return 0
    try:
        LiteLLMClient._configure_litellm()
        from litellm import token_counter

        token_count = int(
            token_counter(model=provider.model, text=text, count_response_tokens=True)
        )
        if token_count >= 1:
            return token_count
    except Exception:  # noqa: BLE001
        logger.debug("token_counter failed for model %r", provider.model, exc_info=True)
    return 1


class RunRecorder:
    """Streams one request and timestamps every chunk relative to the request start."""

    def __init__(
        self,
        client: LLMClientProtocol | None = None,
        clock: Callable[[], float] = time.perf_counter,
        wall_clock: Callable[[], float] = time.time,
        token_counter: TokenCounter = count_chunk_tokens,
    ) -> None:
        self.client = client or LiteLLMClient()
        self.clock = clock
        self.wall_clock = wall_clock
        self.token_counter = token_counter

    def record(self, provider: ProviderConfig, prompt: str) -> RawRun:
        started_at = self.wall_clock()
        request_started = self.clock()
        arrivals: list[tuple[float, str]] = []
        error_type: str | None = None
        error_message: str | None = None

        try:
            for token_text in self.client.stream_completion(provider, prompt):
                arrivals.append((self.clock(), token_text))
        except Exception as exc:  # noqa: BLE001
            error_type = type(exc).__name__
            error_message = str(exc)
            logger.warning(
                "Stream from %r aborted after %d chunk(s): [%s] %s",
                provider.name, len(arrivals), error_type, error_message,
            )

        stream_closed = self.clock()
        # Tokenizing happens after the stream closed so it never shifts the timings.
        events = [
            TokenEvent(
                offset_ms=(arrived - request_started) * 1000,
                token_count=self.token_counter(provider, token_text),
                text=token_text,
            )
            for arrived, token_text in arrivals
        ]
        return RawRun(
            started_at=started_at,
            total_time_ms=(stream_closed - request_started) * 1000,
            events=tuple(events),
            error_type=error_type,
            error_message=error_message,
        )


class BenchmarkRunner:
    def __init__(
        self,
        storage: BenchmarkStorage | None = None,
        recorder: RunRecorder | None = None,
    ) -> None:
        self.storage = storage
        self.recorder = recorder or RunRecorder()

    def run(
        self,
        session_id: str,
        provider: ProviderConfig,
        prompt: str,
        run_count: int,
        max_tokens: int | None = None,
        strict: bool = False,
        on_run_complete: RunCompleteCallback | None = None,
    ) -> BenchmarkResult:
        if self.storage is None:
            raise ValueError("BenchmarkRunner.run requires a storage backend")

        raw_runs: list[RawRun] = []
        metrics: list[CalculatedMetrics] = []
        failures: list[RunFailure] = []
        try:
            self._record_runs(
                provider=provider,
                prompt=prompt,
                run_count=run_count,
                max_tokens=max_tokens,
                strict=strict,
                on_run_complete=on_run_complete,
                raw_runs=raw_runs,
                metrics=metrics,
                failures=failures,
            )
        finally:
            # Recorded runs are kept even when a strict run aborts the batch
            # or no run produced tokens.
            self.storage.insert_raw_runs(session_id=session_id, raw_runs=raw_runs)
        return self._build_result(raw_runs, metrics, failures)

    def run_collect(
        self,
        provider: ProviderConfig,
        prompt: str,
        run_count: int,
        max_tokens: int | None = None,
        strict: bool = False,
        on_run_complete: RunCompleteCallback | None = None,
    ) -> BenchmarkResult:
        raw_runs: list[RawRun] = []
        metrics: list[CalculatedMetrics] = []
        failures: list[RunFailure] = []
        self._record_runs(
            provider=provider,
            prompt=prompt,
            run_count=run_count,
            max_tokens=max_tokens,
            strict=strict,
            on_run_complete=on_run_complete,
            raw_runs=raw_runs,
            metrics=metrics,
            failures=failures,
        )
        return self._build_result(raw_runs, metrics, failures)

    @staticmethod
    def _build_result(
        raw_runs: list[RawRun],
        metrics: list[CalculatedMetrics],
        failures: list[RunFailure],
    ) -> BenchmarkResult:
        return BenchmarkResult(
            raw_runs=raw_runs,
            metrics=metrics,
            stats=calculate_aggregate_stats(metrics),
            failures=failures,
        )

    def _record_runs(
        self,
        provider: ProviderConfig,
        prompt: str,
        run_count: int,
        max_tokens: int | None,
        strict: bool,
        on_run_complete: RunCompleteCallback | None,
        raw_runs: list[RawRun],
        metrics: list[CalculatedMetrics],
        failures: list[RunFailure],
    ) -> None:
        """Record ``run_count`` runs into the caller's lists.

        The lists hold every run recorded so far when a strict abort raises.
        """
        if run_count < 1:
            raise ValueError("run_count must be >= 1")
        if max_tokens is not None:
            provider = replace(provider, max_tokens=max_tokens)

        # Runs are sequential so concurrent requests never skew throughput.
        for run_index in range(run_count):
            raw_run = self.recorder.record(provider, prompt)
            raw_runs.append(raw_run)
            try:
                run_metrics = calculate_run_metrics(raw_run)
            except EmptyRunError as exc:
                if strict:
                    raise
                reason = (
                    f"{raw_run.error_type}: {raw_run.error_message}"
                    if raw_run.error_type
                    else str(exc)
                )
                logger.warning("Excluding run %d of %r: %s", run_index + 1, provider.name, reason)
                failures.append(RunFailure(run_index=run_index, raw_run=raw_run, reason=reason))
                run_metrics = None
            else:
                metrics.append(run_metrics)
            self._notify_run_complete(on_run_complete, run_index, raw_run, run_metrics)

    @staticmethod
    def _notify_run_complete(
        callback: RunCompleteCallback | None,
        run_index: int,
        raw_run: RawRun,
        run_metrics: CalculatedMetrics | None,
    ) -> None:
        if callback is None:
            return
        try:
            callback(run_index, raw_run, run_metrics)
        except Exception:  # noqa: BLE001
            logger.debug("Run progress callback failed", exc_info=True)
