from __future__ import annotations

from datetime import date, datetime, time

import pytest

from config import get_config

TODAY = date(2030, 1, 7)  # a Monday


@pytest.fixture(autouse=True)
def isolated_data_dir(tmp_path, monkeypatch):
    monkeypatch.setenv("STUDY_PLANNER_DATA_DIR", str(tmp_path / "data"))
    get_config.cache_clear()
    yield tmp_path / "data"
    get_config.cache_clear()


@pytest.fixture()
def today() -> date:
    return TODAY


@pytest.fixture()
def early_morning() -> datetime:
    # before the default study window opens, so nothing is running yet
    return datetime.combine(TODAY, time(5, 0))
