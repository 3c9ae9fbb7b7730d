"""pytest fixtures shared by the test modules."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Callable

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))
sys.path.insert(0, str(Path(__file__).parent))

from helpers import FakeSite, RecordingTimer  # noqa: E402


@pytest.fixture
def events() -> list:
    return []


@pytest.fixture
def timer(events) -> RecordingTimer:
    return RecordingTimer(events=events)


@pytest.fixture
def make_site(events) -> Callable[[dict], FakeSite]:
    def _make(pages: dict) -> FakeSite:
        return FakeSite(pages, events)

    return _make
