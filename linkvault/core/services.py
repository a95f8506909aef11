"""Wiring of the enrichment components around one DB connection."""

from __future__ import annotations

from dataclasses import dataclass

from linkvault.core.content_extractor import ContentExtractor
from linkvault.core.embedding_providers import EmbeddingGenerator
from linkvault.core.html_fetcher import HtmlFetcher
from linkvault.core.metadata import MetadataService
from linkvault.core.pipeline import BackgroundExecutor, EnrichmentPipeline, TaskWorker
from linkvault.core.settings import Settings
from linkvault.core.storage import DB
from linkvault.core.task_queue import TaskStore
from linkvault.core.vault import TaskExecutor, Vault


@dataclass
class Services:
    settings: Settings
    db: DB
    store: TaskStore
    metadata: MetadataService
    embeddings: EmbeddingGenerator
    pipeline: EnrichmentPipeline
    worker: TaskWorker
    executor: TaskExecutor
    vault: Vault

    async def close(self) -> None:
        if isinstance(self.executor, BackgroundExecutor):
            await self.executor.stop()
        await self.metadata.fetcher.close()
        await self.metadata.extractor.close()


def build_services(
    settings: Settings,
    db: DB,
    store: TaskStore,
    metadata: MetadataService | None = None,
    embeddings: EmbeddingGenerator | None = None,
    executor: TaskExecutor | None = None,
) -> Services:
    """Construct every component with ``settings`` injected explicitly.

    Any component may be passed in pre-built (tests pass fakes).
    """
    if metadata is None:
        metadata = MetadataService(HtmlFetcher(settings), ContentExtractor(settings))
    if embeddings is None:
        embeddings = EmbeddingGenerator(settings)

    pipeline = EnrichmentPipeline(db, metadata, embeddings, settings)
    worker = TaskWorker(store, pipeline)
    if executor is None:
        executor = BackgroundExecutor(store, worker, settings.worker_concurrency)

    return Services(
        settings=settings,
        db=db,
        store=store,
        metadata=metadata,
        embeddings=embeddings,
        pipeline=pipeline,
        worker=worker,
        executor=executor,
        vault=Vault(db, store, executor),
    )
