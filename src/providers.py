from __future__ import annotations

from dataclasses import dataclass, field
import logging
from pathlib import Path
import tomllib


logger = logging.getLogger(__name__)


def _escape_toml_string(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


def _optional_string(value: object) -> str | None:
    if value is None:
        return None
    parsed = str(value).strip()
    return parsed or None


def _optional_number(data: dict[str, object], key: str, cast: type) -> object:
    value = data.get(key)
    if value is None:
        return None
    try:
        return cast(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Field {key!r} must be a number, got {value!r}") from exc


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, str):
        return f'"{_escape_toml_string(value)}"'
    if isinstance(value, int | float):
        return repr(value)
    raise TypeError(f"Unsupported TOML value type: {type(value)!r}")


def _table_lines(header: str, values: dict[str, object]) -> list[str]:
    lines = [header]
    for key in sorted(values):
        lines.append(f'"{_escape_toml_string(str(key))}" = {_toml_value(values[key])}')
    return lines


@dataclass(slots=True)
class ProviderConfig:
    name: str
    model: str
    api_base: str | None = None
    api_key_env: str | None = None
    extra_headers: dict[str, str] = field(default_factory=dict)
    temperature: float | None = None
    max_tokens: int | None = None
    timeout_s: float | None = None

    def to_dict(self) -> dict[str, object]:
        data: dict[str, object] = {"model": self.model}
        for key in ("api_base", "api_key_env", "temperature", "max_tokens", "timeout_s"):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        if self.extra_headers:
            data["extra_headers"] = dict(self.extra_headers)
        return data

    @classmethod
    def from_dict(cls, name: str, data: dict[str, object]) -> "ProviderConfig":
        model = _optional_string(data.get("model"))
        if model is None:
            raise ValueError(f"Provider {name!r} missing required field 'model'")

        headers = data.get("extra_headers") or {}
        if not isinstance(headers, dict):
            raise ValueError(f"Provider {name!r}: extra_headers must be a table")

        return cls(
            name=name,
            model=model,
            api_base=_optional_string(data.get("api_base")),
            api_key_env=_optional_string(data.get("api_key_env")),
            extra_headers={str(key): str(value) for key, value in headers.items()},
            temperature=_optional_number(data, "temperature", float),
            max_tokens=_optional_number(data, "max_tokens", int),
            timeout_s=_optional_number(data, "timeout_s", float),
        )


class ProviderRegistry:
    """Provider entries stored as ``[providers."<name>"]`` tables of a TOML file.

    Other top-level tables (such as ``[benchmark]``) are kept when the file
    is rewritten.
    """

    def __init__(self, config_path: Path) -> None:
        self.config_path = config_path

    def load(self) -> dict[str, ProviderConfig]:
        providers_raw = self._providers_table(self._read_raw())
        loaded: dict[str, ProviderConfig] = {}
        for name, data in providers_raw.items():
            if not isinstance(data, dict):
                raise ValueError(f"Provider {name!r} entry must be a table")
            loaded[str(name)] = ProviderConfig.from_dict(str(name), data)
        logger.debug("Loaded %d provider(s) from %s", len(loaded), self.config_path)
        return loaded

    def list_providers(self) -> list[ProviderConfig]:
        providers = self.load()
        return [providers[name] for name in sorted(providers)]

    def get_provider(self, name: str) -> ProviderConfig:
        providers = self.load()
        if name not in providers:
            raise KeyError(name)
        return providers[name]

    def save_provider(self, provider: ProviderConfig) -> None:
        if not provider.name.strip():
            raise ValueError("Provider name cannot be empty")

        raw = self._read_raw()
        self._providers_table(raw)[provider.name] = provider.to_dict()
        self._write_raw(raw)
        logger.debug("Saved provider %r to %s", provider.name, self.config_path)

    def remove_provider(self, name: str) -> None:
        raw = self._read_raw()
        providers_raw = self._providers_table(raw)
        if name not in providers_raw:
            raise KeyError(name)
        del providers_raw[name]
        self._write_raw(raw)
        logger.debug("Removed provider %r from %s", name, self.config_path)

    @staticmethod
    def _providers_table(raw: dict[str, object]) -> dict[str, object]:
        providers_raw = raw.setdefault("providers", {})
        if not isinstance(providers_raw, dict):
            raise ValueError("Top-level 'providers' must be a table")
        return providers_raw

    def _read_raw(self) -> dict[str, object]:
        if not self.config_path.exists():
            return {"providers": {}}
        with self.config_path.open("rb") as handle:
            return tomllib.load(handle)

    def _write_raw(self, data: dict[str, object]) -> None:
        blocks: list[list[str]] = []
        for table_name in sorted(data):
            if table_name == "providers":
                continue
            table = data[table_name]
            if not isinstance(table, dict):
                raise ValueError(f"Top-level {table_name!r} must be a table")
            blocks.append(_table_lines(f"[{table_name}]", table))

        providers_raw = self._providers_table(data)
        for provider_name in sorted(providers_raw):
            entry = dict(providers_raw[provider_name])
            headers = entry.pop("extra_headers", None) or {}
            quoted_name = _escape_toml_string(str(provider_name))
            blocks.append(_table_lines(f'[providers."{quoted_name}"]', entry))
            if headers:
                blocks.append(
                    _table_lines(
                        f'[providers."{quoted_name}".extra_headers]',
                        {str(key): str(value) for key, value in headers.items()},
                    )
                )

        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        content = "\n\n".join("\n".join(block) for block in blocks)
        self.config_path.write_text(
            content + ("\n" if content else ""), encoding="utf-8"
        )
