"""Tests for the project metadata in pyproject.toml."""
from __future__ import annotations

from pathlib import Path

import pytest

tomllib = pytest.importorskip("tomllib")

PROJECT_ROOT = Path(__file__).resolve().parent.parent


@pytest.fixture
def project() -> dict:
    with open(PROJECT_ROOT / "pyproject.toml", "rb") as handle:
        return tomllib.load(handle)["project"]


def test_metadata_files_exist(project) -> None:
    readme = project.get("readme")
    if readme is not None:
        assert (PROJECT_ROOT / readme).is_file()
        assert readme.lower().startswith("readme")


def test_runtime_dependencies_are_declared(project) -> None:
    names = {dep.split(">")[0].split("<")[0].split("=")[0].strip().lower() for dep in project["dependencies"]}

    assert {"flask", "flask-sqlalchemy", "sqlalchemy", "apscheduler", "httpx", "redis", "python-dotenv"} <= names
    assert "pytest" in " ".join(project["optional-dependencies"]["test"])
