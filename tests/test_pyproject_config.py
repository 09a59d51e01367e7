from __future__ import annotations

from pathlib import Path
import tomllib


def _pyproject() -> dict[str, object]:
    pyproject_path = Path(__file__).resolve().parents[1] / "pyproject.toml"
    return tomllib.loads(pyproject_path.read_text(encoding="utf-8"))


def test_pyproject_declares_cli_script() -> None:
    scripts = _pyproject()["project"]["scripts"]
    assert scripts["token-speed"] == "cli:main"


def test_pyproject_installs_every_source_module() -> None:
    src_dir = Path(__file__).resolve().parents[1] / "src"
    modules = set(_pyproject()["tool"]["setuptools"]["py-modules"])
    assert modules == {path.stem for path in src_dir.glob("*.py")}


def test_pyproject_readme_exists() -> None:
    readme = _pyproject()["project"]["readme"]
    assert readme == "README.md"
    assert (Path(__file__).resolve().parents[1] / readme).is_file()
