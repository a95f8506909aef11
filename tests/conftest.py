"""Shared fixtures: explicit settings, in-memory DB, and in-process fakes."""

import asyncio

import pytest

from linkvault.core.content_extractor import ContentExtractor
from linkvault.core.metadata import MetadataService
from linkvault.core.settings import Settings
from linkvault.core.storage import DB, connect
from linkvault.core.task_queue import TaskStore


def make_settings(**overrides) -> Settings:
    values = dict(
        app_env="test",
        db_path=":memory:",
        log_level="DEBUG",
        provider_api_key="",
        embedding_base_url="https://api.openai.com/v1",
        embedding_model="text-embedding-3-large",
        embedding_dimensions=3072,
        fetch_timeout_ms=15000,
        metadata_deadline_ms=20000,
        embedding_timeout_ms=60000,
        oembed_timeout_ms=10000,
        batch_size=100,
        pipeline_timeout_ms=30000,
        worker_concurrency=1,
        enable_background_worker=False,
    )
    values.update(overrides)
    return Settings(**values)


class FakeFetcher:
    """Serves canned HTML per URL; unknown URLs yield "" like a failed fetch."""

    def __init__(self, pages=None, delay: float = 0.0, error: Exception | None = None):
        self.pages = dict(pages or {})
        self.delay = delay
        self.error = error
        self.calls = []

    async def fetch_html(self, url: str) -> str:
        self.calls.append(url)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.pages.get(url, "")

    async def close(self) -> None:
        pass


class RecordingExecutor:
    """Collects submitted task ids instead of running them."""

    def __init__(self):
        self.submitted = []

    def submit(self, task_id: str) -> None:
        self.submitted.append(task_id)


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def conn():
    conn = connect(":memory:")
    yield conn
    conn.close()


@pytest.fixture
def db(conn):
    db = DB(conn=conn, dimensions=3072)
    db.init()
    return db


@pytest.fixture
def store(db):
    return TaskStore(db.conn)


@pytest.fixture
def fake_fetcher():
    return FakeFetcher()


@pytest.fixture
def executor():
    return RecordingExecutor()


@pytest.fixture
def metadata_service(settings, fake_fetcher):
    return MetadataService(fake_fetcher, ContentExtractor(settings))


def unit_vector(index: int, dims: int = 3072) -> list[float]:
    vector = [0.0] * dims
    vector[index] = 1.0
    return vector
