"""Shared test fixtures."""

from __future__ import annotations

from pathlib import Path

import pytest

from sockmap.parsers import LoadResult, load_directory


@pytest.fixture(autouse=True)
def isolated_config(tmp_path_factory: pytest.TempPathFactory, monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep the user's config file and SOCKMAP_* variables out of the tests."""
    home = tmp_path_factory.mktemp("home")
    monkeypatch.setenv("XDG_CONFIG_HOME", str(home / "config"))
    monkeypatch.setenv("XDG_DATA_HOME", str(home / "data"))
    for name in (
        "SOCKMAP_SERVER_HOST",
        "SOCKMAP_SERVER_PORT",
        "SOCKMAP_CAPTURE_TIMEOUT",
        "SOCKMAP_RECORD_INTERVAL",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def fixtures_dir() -> Path:
    return Path(__file__).parent / "fixtures"


@pytest.fixture
def captures_dir(fixtures_dir: Path) -> Path:
    return fixtures_dir / "captures"


@pytest.fixture
def loaded(captures_dir: Path) -> LoadResult:
    return load_directory(captures_dir)
