from __future__ import annotations

from pathlib import Path
import sys

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from config import (
    DEFAULT_MAX_TOKENS,
    DEFAULT_RUN_COUNT,
    BenchmarkConfig,
    BenchmarkDefaults,
    load_benchmark_defaults,
)


def _config(**overrides: object) -> BenchmarkConfig:
    values: dict[str, object] = {
        "provider": "openai",
        "model": "gpt-4o-mini",
        "max_tokens": 128,
        "run_count": 3,
        "prompt": "hello",
    }
    values.update(overrides)
    return BenchmarkConfig(**values)


def test_defaults_apply_when_config_file_missing(tmp_path: Path) -> None:
    defaults = load_benchmark_defaults(tmp_path / "absent.toml")
    assert defaults == BenchmarkDefaults()
    assert defaults.run_count == DEFAULT_RUN_COUNT
    assert defaults.max_tokens == DEFAULT_MAX_TOKENS


def test_defaults_read_benchmark_table(tmp_path: Path) -> None:
    config_path = tmp_path / "token-speed.toml"
    config_path.write_text(
        "[benchmark]\n"
        "runs = 7\n"
        "max_tokens = 256\n"
        'prompt = "  Explain TCP.  "\n'
        'lang = "ZH"\n'
        'format = "csv"\n',
        encoding="utf-8",
    )
    defaults = load_benchmark_defaults(config_path)
    assert defaults.run_count == 7
    assert defaults.max_tokens == 256
    assert defaults.prompt == "Explain TCP."
    assert defaults.lang == "zh"
    assert defaults.output_format == "csv"


def test_defaults_reject_non_table_benchmark(tmp_path: Path) -> None:
    config_path = tmp_path / "token-speed.toml"
    config_path.write_text('benchmark = "fast"\n', encoding="utf-8")
    with pytest.raises(ValueError):
        load_benchmark_defaults(config_path)


@pytest.mark.parametrize(
    ("overrides", "message"),
    [
        ({"run_count": 0}, "run_count"),
        ({"max_tokens": 0}, "max_tokens"),
        ({"prompt": "   "}, "prompt"),
        ({"output_format": "xml"}, "output format"),
        ({"lang": "fr"}, "language"),
    ],
)
def test_validate_rejects_bad_values(overrides: dict[str, object], message: str) -> None:
    with pytest.raises(ValueError, match=message):
        _config(**overrides).validate()


def test_default_output_path_uses_session_and_format() -> None:
    config = _config(output_format="json")
    assert config.resolved_output_path("abc123") == Path("token-speed-abc123.json")
    explicit = _config(output_path=Path("out/report.json"))
    assert explicit.resolved_output_path("abc123") == Path("out/report.json")


def test_config_dict_round_trip() -> None:
    config = _config(lang="zh", output_format="csv", output_path=Path("r.csv"))
    assert BenchmarkConfig.from_dict(config.to_dict()) == config
