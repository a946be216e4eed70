from __future__ import annotations

import pytest
from fakes import FakeRunner, FakeScheduler, FakeSink


@pytest.fixture
def scheduler() -> FakeScheduler:
    return FakeScheduler()


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def sink(scheduler: FakeScheduler) -> FakeSink:
    return FakeSink(scheduler)
