from typing import Callable

import pytest

from fakes import (
    FakeClock,
    FakeUpstreamClient,
    PipelineHarness,
    RecordingRenderer,
)


@pytest.fixture
def harness() -> PipelineHarness:
    return PipelineHarness()


@pytest.fixture
def make_harness() -> Callable[..., PipelineHarness]:
    return PipelineHarness


@pytest.fixture
def fake_client() -> FakeUpstreamClient:
    return FakeUpstreamClient()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def renderer() -> RecordingRenderer:
    return RecordingRenderer()
