from __future__ import annotations

from pathlib import Path
import sys
import tomllib

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from providers import ProviderConfig, ProviderRegistry


@pytest.fixture
def registry(tmp_path: Path) -> ProviderRegistry:
    return ProviderRegistry(tmp_path / "token-speed.toml")


def test_registry_round_trips_provider_options(registry: ProviderRegistry) -> None:
    saved = ProviderConfig(
        name="deepseek",
        model="deepseek/deepseek-chat",
        api_base="https://api.deepseek.com/v1",
        api_key_env="DEEPSEEK_API_KEY",
        extra_headers={"x-tenant-id": "bench-team"},
        temperature=0.0,
        max_tokens=512,
        timeout_s=30.0,
    )
    registry.save_provider(saved)
    registry.save_provider(ProviderConfig(name="openai", model="gpt-4o-mini"))

    loaded = registry.load()
    assert set(loaded) == {"deepseek", "openai"}
    assert loaded["deepseek"] == saved
    assert loaded["openai"].max_tokens is None


def test_list_providers_returns_name_sorted(registry: ProviderRegistry) -> None:
    registry.save_provider(ProviderConfig(name="zeta", model="m1"))
    registry.save_provider(ProviderConfig(name="alpha", model="m2"))
    assert [provider.name for provider in registry.list_providers()] == ["alpha", "zeta"]


def test_save_provider_replaces_existing_entry(registry: ProviderRegistry) -> None:
    registry.save_provider(ProviderConfig(name="openai", model="gpt-4o-mini"))
    registry.save_provider(ProviderConfig(name="openai", model="gpt-4o"))
    assert registry.get_provider("openai").model == "gpt-4o"


def test_remove_provider_deletes_existing_entry(registry: ProviderRegistry) -> None:
    registry.save_provider(ProviderConfig(name="openai", model="gpt-4o-mini"))
    registry.remove_provider("openai")
    assert registry.load() == {}


def test_missing_provider_raises_key_error(registry: ProviderRegistry) -> None:
    with pytest.raises(KeyError):
        registry.remove_provider("missing")
    with pytest.raises(KeyError):
        registry.get_provider("missing")


def test_registry_keeps_benchmark_table(registry: ProviderRegistry) -> None:
    registry.config_path.write_text(
        '[benchmark]\nruns = 5\nprompt = "Count to ten."\n',
        encoding="utf-8",
    )
    registry.save_provider(ProviderConfig(name="openai", model="gpt-4o-mini"))

    parsed = tomllib.loads(registry.config_path.read_text(encoding="utf-8"))
    assert parsed["benchmark"] == {"runs": 5, "prompt": "Count to ten."}
    assert parsed["providers"]["openai"] == {"model": "gpt-4o-mini"}


def test_provider_names_with_dots_are_quoted(registry: ProviderRegistry) -> None:
    registry.save_provider(ProviderConfig(name="azure.eu", model="gpt-4o"))
    assert registry.get_provider("azure.eu").model == "gpt-4o"


def test_load_raises_when_provider_model_missing(registry: ProviderRegistry) -> None:
    registry.config_path.write_text(
        '[providers."bad-provider"]\napi_base = "https://example.com"\n',
        encoding="utf-8",
    )
    with pytest.raises(ValueError):
        registry.load()


def test_load_raises_on_non_numeric_option(registry: ProviderRegistry) -> None:
    registry.config_path.write_text(
        '[providers.openai]\nmodel = "gpt-4o-mini"\nmax_tokens = "lots"\n',
        encoding="utf-8",
    )
    with pytest.raises(ValueError, match="max_tokens"):
        registry.load()


def test_from_dict_normalizes_optional_string_fields() -> None:
    provider = ProviderConfig.from_dict(
        "openai",
        {
            "model": "gpt-4o-mini",
            "api_base": None,
            "api_key_env": "   ",
        },
    )
    assert provider.api_base is None
    assert provider.api_key_env is None
