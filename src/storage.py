from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

import duckdb

from config import BenchmarkConfig
from records import RawRun, TokenEvent

logger = logging.getLogger(__name__)


_SESSION_COLUMNS = (
    "session_id",
    "started_at",
    "finished_at",
    "duration_s",
    "provider_name",
    "model",
    "prompt",
    "config_json",
)


class BenchmarkStorage:
    """Raw run traces persisted in DuckDB.

    Only what the recorder observed is stored; metrics are always derived
    again from the traces.
    """

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        logger.debug("Opening database: %s", db_path)
        self.connection = duckdb.connect(str(db_path))
        self._init_schema()

    def _init_schema(self) -> None:
        logger.debug("Initializing schema")
        self.connection.execute(
            """
            CREATE TABLE IF NOT EXISTS sessions (
                session_id VARCHAR PRIMARY KEY,
                started_at DOUBLE NOT NULL,
                finished_at DOUBLE,
                duration_s DOUBLE,
                provider_name VARCHAR NOT NULL,
                model VARCHAR NOT NULL,
                prompt VARCHAR NOT NULL,
                config_json VARCHAR NOT NULL
            );

            CREATE TABLE IF NOT EXISTS runs (
                session_id VARCHAR NOT NULL,
                run_index BIGINT NOT NULL,
                started_at DOUBLE NOT NULL,
                total_time_ms DOUBLE NOT NULL,
                error_type VARCHAR,
                error_message VARCHAR,
                PRIMARY KEY (session_id, run_index)
            );

            CREATE TABLE IF NOT EXISTS token_events (
                session_id VARCHAR NOT NULL,
                run_index BIGINT NOT NULL,
                event_index BIGINT NOT NULL,
                offset_ms DOUBLE NOT NULL,
                token_count BIGINT NOT NULL,
                token_text VARCHAR NOT NULL
            );
            """
        )

    def create_session(
        self, session_id: str, started_at: float, config: BenchmarkConfig
    ) -> None:
        logger.debug("Creating session: %s", session_id)
        self.connection.execute(
            """
            INSERT INTO sessions (
                session_id, started_at, provider_name, model, prompt, config_json
            )
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            [
                session_id,
                started_at,
                config.provider,
                config.model,
                config.prompt,
                json.dumps(config.to_dict(), ensure_ascii=True),
            ],
        )

    def finish_session(self, session_id: str, finished_at: float) -> None:
        logger.debug("Finishing session: %s", session_id)
        self.connection.execute(
            """
            UPDATE sessions
            SET finished_at = ?, duration_s = ? - started_at
            WHERE session_id = ?
            """,
            [finished_at, finished_at, session_id],
        )

    def get_session(self, session_id: str) -> dict[str, Any]:
        row = self.connection.execute(
            f"""
            SELECT {", ".join(_SESSION_COLUMNS)}
            FROM sessions
            WHERE session_id = ?
            """,
            [session_id],
        ).fetchone()
        if row is None:
            raise KeyError(session_id)
        return dict(zip(_SESSION_COLUMNS, row))

    def get_session_config(self, session_id: str) -> BenchmarkConfig:
        session = self.get_session(session_id)
        return BenchmarkConfig.from_dict(json.loads(session["config_json"]))

    def list_sessions(self) -> list[dict[str, Any]]:
        rows = self.connection.execute(
            f"""
            SELECT {", ".join(_SESSION_COLUMNS)}
            FROM sessions
            ORDER BY started_at DESC
            """
        ).fetchall()
        return [dict(zip(_SESSION_COLUMNS, row)) for row in rows]

    def list_sessions_with_stats(self) -> list[dict[str, Any]]:
        rows = self.connection.execute(
            """
            WITH run_counts AS (
                SELECT
                    session_id,
                    COUNT(*) AS run_count,
                    SUM(CASE WHEN error_type IS NULL THEN 0 ELSE 1 END) AS failed_count
                FROM runs
                GROUP BY session_id
            ),
            token_totals AS (
                SELECT session_id, SUM(token_count) AS token_count
                FROM token_events
                GROUP BY session_id
            )
            SELECT
                sessions.session_id,
                sessions.started_at,
                sessions.finished_at,
                sessions.duration_s,
                sessions.provider_name,
                sessions.model,
                COALESCE(run_counts.run_count, 0) AS run_count,
                COALESCE(run_counts.failed_count, 0) AS failed_count,
                COALESCE(token_totals.token_count, 0) AS token_count
            FROM sessions
            LEFT JOIN run_counts USING (session_id)
            LEFT JOIN token_totals USING (session_id)
            ORDER BY sessions.started_at DESC
            """
        ).fetchall()
        return [
            {
                "session_id": row[0],
                "started_at": row[1],
                "finished_at": row[2],
                "duration_s": row[3],
                "provider_name": row[4],
                "model": row[5],
                "run_count": int(row[6] or 0),
                "failed_count": int(row[7] or 0),
                "token_count": int(row[8] or 0),
            }
            for row in rows
        ]

    def insert_raw_runs(
        self, session_id: str, raw_runs: list[RawRun], first_index: int = 0
    ) -> None:
        if not raw_runs:
            return
        logger.debug("Inserting %d raw runs into session %s", len(raw_runs), session_id)
        self.connection.executemany(
            """
            INSERT INTO runs (
                session_id, run_index, started_at, total_time_ms, error_type, error_message
            )
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    session_id,
                    first_index + offset,
                    raw_run.started_at,
                    raw_run.total_time_ms,
                    raw_run.error_type,
                    raw_run.error_message,
                )
                for offset, raw_run in enumerate(raw_runs)
            ],
        )
        event_rows = [
            (
                session_id,
                first_index + offset,
                event_index,
                event.offset_ms,
                event.token_count,
                event.text,
            )
            for offset, raw_run in enumerate(raw_runs)
            for event_index, event in enumerate(raw_run.events)
        ]
        if not event_rows:
            return
        self.connection.executemany(
            """
            INSERT INTO token_events (
                session_id, run_index, event_index, offset_ms, token_count, token_text
            )
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            event_rows,
        )

    def load_raw_runs(self, session_id: str) -> list[RawRun]:
        run_rows = self.connection.execute(
            """
            SELECT run_index, started_at, total_time_ms, error_type, error_message
            FROM runs
            WHERE session_id = ?
            ORDER BY run_index
            """,
            [session_id],
        ).fetchall()
        event_rows = self.connection.execute(
            """
            SELECT run_index, offset_ms, token_count, token_text
            FROM token_events
            WHERE session_id = ?
            ORDER BY run_index, event_index
            """,
            [session_id],
        ).fetchall()

        events_by_run: dict[int, list[TokenEvent]] = {}
        for run_index, offset_ms, token_count, token_text in event_rows:
            events_by_run.setdefault(int(run_index), []).append(
                TokenEvent(
                    offset_ms=float(offset_ms),
                    token_count=int(token_count),
                    text=token_text,
                )
            )

        return [
            RawRun(
                started_at=float(started_at),
                total_time_ms=float(total_time_ms),
                events=tuple(events_by_run.get(int(run_index), [])),
                error_type=error_type,
                error_message=error_message,
            )
            for run_index, started_at, total_time_ms, error_type, error_message in run_rows
        ]

    def delete_session(self, session_id: str) -> bool:
        existing = self.connection.execute(
            "SELECT 1 FROM sessions WHERE session_id = ? LIMIT 1", [session_id]
        ).fetchone()
        if existing is None:
            return False

        logger.debug("Deleting session: %s", session_id)
        self.connection.execute("BEGIN TRANSACTION")
        try:
            for table in ("token_events", "runs", "sessions"):
                self.connection.execute(
                    f"DELETE FROM {table} WHERE session_id = ?", [session_id]
                )
            self.connection.execute("COMMIT")
        except Exception:  # noqa: BLE001
            logger.warning(
                "Error during deletion of session %s, rolling back transaction",
                session_id, exc_info=True,
            )
            self.connection.execute("ROLLBACK")
            raise
        return True

    def close(self) -> None:
        self.connection.close()
