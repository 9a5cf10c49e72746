"""Unit test fixtures: fakes wired into an isolated memory service."""

from __future__ import annotations

import random

import pytest

from recallguard.config import EmbeddingConfig
from recallguard.config import Settings
from recallguard.memory import MemoryService
from recallguard.resilience import ResilienceContext
from tests.helpers.fakes import EMBEDDING_DIMENSION
from tests.helpers.fakes import FakeClock
from tests.helpers.fakes import FakeCompletionProvider
from tests.helpers.fakes import FakeEmbeddingProvider
from tests.helpers.fakes import InMemoryFragmentDatastore
from tests.helpers.fakes import RecordingSleep


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def sleeper(clock) -> RecordingSleep:
    return RecordingSleep(clock)


@pytest.fixture()
def settings() -> Settings:
    return Settings(embedding=EmbeddingConfig(dimension=EMBEDDING_DIMENSION))


@pytest.fixture()
def resilience(settings, clock, sleeper) -> ResilienceContext:
    """Isolated resilience state with a fake clock and a seeded RNG."""
    return ResilienceContext.from_settings(
        settings, clock=clock, sleep=sleeper, rng=random.Random(7)
    )


@pytest.fixture()
def datastore(clock) -> InMemoryFragmentDatastore:
    return InMemoryFragmentDatastore(clock)


@pytest.fixture()
def completion() -> FakeCompletionProvider:
    return FakeCompletionProvider()


@pytest.fixture()
def embeddings() -> FakeEmbeddingProvider:
    return FakeEmbeddingProvider()


@pytest.fixture()
def service(datastore, completion, embeddings, settings, resilience) -> MemoryService:
    return MemoryService.build(
        datastore=datastore,
        completion=completion,
        embeddings=embeddings,
        settings=settings,
        resilience=resilience,
    )
