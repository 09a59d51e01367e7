from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class TokenEvent:
    offset_ms: float
    token_count: int
    text: str = ""


@dataclass(frozen=True, slots=True)
class RawRun:
    started_at: float
    total_time_ms: float
    events: tuple[TokenEvent, ...]
    error_type: str | None = None
    error_message: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.error_type is None
