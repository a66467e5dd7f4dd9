"""
Pytest configuration and shared fixtures.
"""

from datetime import datetime, timedelta

import pytest

from tg_search.database.repository import Repository, MessageRecord
from tg_search.embedding.client import EmbeddingError


DIMENSIONS = 3
BASE_TIME = datetime(2024, 1, 1, 12, 0, 0)


class FakeEmbedder:
    """Stands in for EmbeddingClient; records every batch it is asked to embed."""

    def __init__(self, dimensions: int = DIMENSIONS, fail_on: tuple = ()):
        self.dimensions = dimensions
        self.fail_on = fail_on
        self.calls: list[list[str]] = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *args):
        pass

    def vector_for(self, text: str) -> list[float]:
        return ([1.0, float(len(text) % 7), 0.5] + [0.0] * self.dimensions)[:self.dimensions]

    async def generate_embeddings(self, texts: list[str]) -> list[list[float]]:
        self.calls.append(list(texts))
        if len(self.calls) in self.fail_on:
            raise EmbeddingError("provider unavailable")
        return [self.vector_for(t) for t in texts]

    async def generate_embedding(self, text: str) -> list[float]:
        vectors = await self.generate_embeddings([text])
        return vectors[0]

    @property
    def texts(self) -> list[str]:
        return [t for call in self.calls for t in call]


def make_message(message_id: int, chat_id: int = 1, content="hello", **kwargs) -> MessageRecord:
    kwargs.setdefault("created_at", BASE_TIME + timedelta(minutes=message_id))
    return MessageRecord(id=message_id, chat_id=chat_id, content=content, **kwargs)


@pytest.fixture
async def repo(tmp_path):
    """Repository backed by a temporary SQLite database with 3-dimensional embeddings."""
    repository = Repository(tmp_path / "test.db", dimensions=DIMENSIONS)
    await repository.connect()
    yield repository
    await repository.close()


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
async def seeded_repo(repo):
    """Repository holding 250 text messages in chat 1 without embeddings."""
    await repo.create_messages([make_message(i, content=f"message {i}") for i in range(1, 251)])
    return repo
