"""Shared fixtures: a fake log source and a sink that records deliveries."""

import pytest

from core.decoder import EventDecoder
from tests.fakes import FakeLogSource, RecordingSink


@pytest.fixture
def source():
    return FakeLogSource()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture(scope="session")
def decoder():
    return EventDecoder()
