from __future__ import annotations

from pathlib import Path
import sys

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from config import BenchmarkConfig
from metrics import calculate_run_metrics
from records import RawRun, TokenEvent
from storage import BenchmarkStorage


def _config(prompt: str = "hello") -> BenchmarkConfig:
    return BenchmarkConfig(
        provider="openai",
        model="gpt-4o-mini",
        max_tokens=64,
        run_count=2,
        prompt=prompt,
        lang="zh",
        output_format="csv",
    )


def _raw_runs() -> list[RawRun]:
    return [
        RawRun(
            started_at=10.0,
            total_time_ms=2300.5,
            events=(
                TokenEvent(offset_ms=210.25, token_count=2, text="He"),
                TokenEvent(offset_ms=900.0, token_count=1, text="llo"),
                TokenEvent(offset_ms=1800.75, token_count=3, text=" world!"),
            ),
        ),
        RawRun(
            started_at=13.0,
            total_time_ms=450.0,
            events=(),
            error_type="RuntimeError",
            error_message="mock error",
        ),
    ]


@pytest.fixture
def storage(tmp_path: Path):
    storage = BenchmarkStorage(tmp_path / "bench.duckdb")
    yield storage
    storage.close()


def test_storage_round_trips_raw_runs(storage: BenchmarkStorage) -> None:
    storage.create_session(session_id="s-1", started_at=10.0, config=_config())
    storage.insert_raw_runs(session_id="s-1", raw_runs=_raw_runs())

    loaded = storage.load_raw_runs("s-1")

    assert loaded == _raw_runs()
    assert calculate_run_metrics(loaded[0]) == calculate_run_metrics(_raw_runs()[0])
    assert loaded[1].events == ()
    assert loaded[1].error_message == "mock error"


def test_storage_appends_runs_after_first_index(storage: BenchmarkStorage) -> None:
    storage.create_session(session_id="s-1", started_at=10.0, config=_config())
    first, second = _raw_runs()
    storage.insert_raw_runs(session_id="s-1", raw_runs=[second])
    storage.insert_raw_runs(session_id="s-1", raw_runs=[first], first_index=1)

    assert storage.load_raw_runs("s-1") == [second, first]


def test_storage_keeps_session_config(storage: BenchmarkStorage) -> None:
    config = _config(prompt='Say "hi"\nthen stop')
    storage.create_session(session_id="s-1", started_at=10.0, config=config)
    storage.finish_session(session_id="s-1", finished_at=14.5)

    session = storage.get_session("s-1")
    assert session["provider_name"] == "openai"
    assert session["model"] == "gpt-4o-mini"
    assert session["prompt"] == 'Say "hi"\nthen stop'
    assert session["duration_s"] == pytest.approx(4.5)
    assert storage.get_session_config("s-1") == config


def test_storage_missing_session_raises_key_error(storage: BenchmarkStorage) -> None:
    with pytest.raises(KeyError):
        storage.get_session("missing")
    assert storage.load_raw_runs("missing") == []


def test_storage_lists_sessions_with_stats(storage: BenchmarkStorage) -> None:
    storage.create_session(session_id="old", started_at=1.0, config=_config())
    storage.create_session(session_id="new", started_at=20.0, config=_config())
    storage.insert_raw_runs(session_id="new", raw_runs=_raw_runs())

    sessions = storage.list_sessions_with_stats()

    assert [session["session_id"] for session in sessions] == ["new", "old"]
    assert sessions[0]["run_count"] == 2
    assert sessions[0]["failed_count"] == 1
    assert sessions[0]["token_count"] == 6
    assert sessions[1]["run_count"] == 0
    assert sessions[1]["token_count"] == 0
    assert sessions[1]["finished_at"] is None
    assert [session["session_id"] for session in storage.list_sessions()] == ["new", "old"]


def test_storage_delete_session_removes_every_row(storage: BenchmarkStorage) -> None:
    storage.create_session(session_id="s-1", started_at=10.0, config=_config())
    storage.create_session(session_id="s-2", started_at=11.0, config=_config())
    storage.insert_raw_runs(session_id="s-1", raw_runs=_raw_runs())
    storage.insert_raw_runs(session_id="s-2", raw_runs=_raw_runs())

    assert storage.delete_session("s-1") is True
    assert storage.delete_session("s-1") is False

    assert storage.load_raw_runs("s-1") == []
    with pytest.raises(KeyError):
        storage.get_session("s-1")
    assert len(storage.load_raw_runs("s-2")) == 2


def test_storage_reopens_existing_database(tmp_path: Path) -> None:
    db_path = tmp_path / "bench.duckdb"
    storage = BenchmarkStorage(db_path)
    storage.create_session(session_id="s-1", started_at=10.0, config=_config())
    storage.insert_raw_runs(session_id="s-1", raw_runs=_raw_runs())
    storage.close()

    reopened = BenchmarkStorage(db_path)
    assert reopened.load_raw_runs("s-1") == _raw_runs()
    reopened.close()
