from datetime import datetime, timezone

import pytest

from opflow.executor import Engine

FIXED_NOW = datetime(2024, 4, 9, 15, 30, 12, 345000, tzinfo=timezone.utc)


@pytest.fixture
def engine():
    return Engine()


@pytest.fixture
def lenient_engine():
    return Engine(strict_state=False)


@pytest.fixture
def frozen_clock(monkeypatch):
    """Pin the cursor clock to 2024-04-09T15:30:12.345Z."""
    monkeypatch.setattr("opflow.cursor._utcnow", lambda: FIXED_NOW)
    return FIXED_NOW


@pytest.fixture(autouse=True)
def isolated_home(tmp_path, monkeypatch):
    # Never read the developer's real ~/.config/opflow
    home = tmp_path / "opflow_home"
    monkeypatch.setenv("OPFLOW_HOME", str(home))
    return home
