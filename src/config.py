from __future__ import annotations

from dataclasses import dataclass
import logging
from pathlib import Path
import tomllib

from messages import DEFAULT_LANG, MESSAGES


logger = logging.getLogger(__name__)

OUTPUT_FORMATS = ("json", "csv", "html")
DEFAULT_RUN_COUNT = 3
DEFAULT_MAX_TOKENS = 1024
DEFAULT_PROMPT = "Write a short story about a robot learning to paint."
DEFAULT_OUTPUT_FORMAT = "html"


@dataclass(slots=True)
class BenchmarkDefaults:
    run_count: int = DEFAULT_RUN_COUNT
    max_tokens: int = DEFAULT_MAX_TOKENS
    prompt: str = DEFAULT_PROMPT
    lang: str = DEFAULT_LANG
    output_format: str = DEFAULT_OUTPUT_FORMAT

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> "BenchmarkDefaults":
        defaults = cls()
        if data.get("runs") is not None:
            defaults.run_count = int(data["runs"])
        if data.get("max_tokens") is not None:
            defaults.max_tokens = int(data["max_tokens"])
        if data.get("prompt") is not None and str(data["prompt"]).strip():
            defaults.prompt = str(data["prompt"]).strip()
        if data.get("lang") is not None:
            defaults.lang = str(data["lang"]).strip().lower()
        if data.get("format") is not None:
            defaults.output_format = str(data["format"]).strip().lower()
        return defaults

    def to_dict(self) -> dict[str, object]:
        return {
            "runs": self.run_count,
            "max_tokens": self.max_tokens,
            "prompt": self.prompt,
            "lang": self.lang,
            "format": self.output_format,
        }


def load_benchmark_defaults(config_path: Path) -> BenchmarkDefaults:
    """Read the ``[benchmark]`` table of the config file, if any."""
    if not config_path.exists():
        return BenchmarkDefaults()

    with config_path.open("rb") as handle:
        parsed = tomllib.load(handle)
    raw = parsed.get("benchmark", {})
    if not isinstance(raw, dict):
        raise ValueError("Top-level 'benchmark' must be a table")
    logger.debug("Loaded benchmark defaults from %s", config_path)
    return BenchmarkDefaults.from_dict(raw)


@dataclass(slots=True)
class BenchmarkConfig:
    provider: str
    model: str
    max_tokens: int
    run_count: int
    prompt: str
    lang: str = DEFAULT_LANG
    output_format: str = DEFAULT_OUTPUT_FORMAT
    output_path: Path | None = None

    def validate(self) -> None:
        if self.run_count < 1:
            raise ValueError("run_count must be >= 1")
        if self.max_tokens < 1:
            raise ValueError("max_tokens must be >= 1")
        if not self.prompt.strip():
            raise ValueError("prompt cannot be empty")
        if self.output_format not in OUTPUT_FORMATS:
            raise ValueError(
                f"Unsupported output format {self.output_format!r}; "
                f"use one of {', '.join(OUTPUT_FORMATS)}"
            )
        if self.lang not in MESSAGES:
            raise ValueError(f"Unsupported language {self.lang!r}")

    def resolved_output_path(self, session_id: str) -> Path:
        if self.output_path is not None:
            return self.output_path
        return Path(f"token-speed-{session_id}.{self.output_format}")

    def to_dict(self) -> dict[str, object]:
        return {
            "provider": self.provider,
            "model": self.model,
            "max_tokens": self.max_tokens,
            "run_count": self.run_count,
            "prompt": self.prompt,
            "lang": self.lang,
            "output_format": self.output_format,
            "output_path": str(self.output_path) if self.output_path else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> "BenchmarkConfig":
        output_path = data.get("output_path")
        return cls(
            provider=str(data["provider"]),
            model=str(data["model"]),
            max_tokens=int(data["max_tokens"]),
            run_count=int(data["run_count"]),
            prompt=str(data["prompt"]),
            lang=str(data.get("lang") or DEFAULT_LANG),
            output_format=str(data.get("output_format") or DEFAULT_OUTPUT_FORMAT),
            output_path=Path(str(output_path)) if output_path else None,
        )
