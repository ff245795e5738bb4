"""Pytest configuration and fixtures."""

from datetime import datetime, timedelta, timezone

import pytest

from content_pipeline.config.settings import Settings
from content_pipeline.models import PipelineRun, PipelineTemplate
from content_pipeline.pipeline import PipelineStateMachine


class FakeClock:
    """Deterministic clock; call it for the time, advance it explicitly."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


@pytest.fixture
def start_time() -> datetime:
    return datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock(start_time: datetime) -> FakeClock:
    return FakeClock(start_time)


@pytest.fixture
def settings() -> Settings:
    """Settings with defaults only, ignoring any local .env file."""
    return Settings(_env_file=None)


@pytest.fixture
def machine(settings: Settings, clock: FakeClock) -> PipelineStateMachine:
    return PipelineStateMachine(settings=settings, clock=clock)


@pytest.fixture
def run(machine: PipelineStateMachine) -> PipelineRun:
    """A fresh IDLE run on the standard template."""
    return machine.create_run("transcript-1", template=PipelineTemplate.STANDARD)


@pytest.fixture
def auto_run(machine: PipelineStateMachine) -> PipelineRun:
    """A fresh IDLE run that approves every review automatically."""
    return machine.create_run("transcript-1", options={"auto_approve": True})
