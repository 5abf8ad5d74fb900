from __future__ import annotations

from pathlib import Path

import pytest

from agentjobs.settings import Settings
from tests.fakes import FakeClock, make_settings


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return make_settings(tmp_path)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()
