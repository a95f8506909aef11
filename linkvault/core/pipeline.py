"""Enrichment pipeline orchestrating fetch -> extract -> chunk -> embed -> persist.

This module coordinates background enrichment of links and notes:
1. FETCHING: Retrieve the page HTML
2. EXTRACTING: Derive metadata and full text (metadata is saved right away)
3. CHUNKING: Split long text into overlapping chunks
4. EMBEDDING: Embed chunks (remote provider, local fallback)
5. PERSISTED: Store the document vector and chunk rows

A failure at any stage leaves earlier writes in place. Tasks from the
background_tasks table are dispatched by TaskWorker and scheduled by
BackgroundExecutor.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from linkvault.core.chunking import CHUNK_OVERLAP, CHUNK_SIZE, chunk_text
from linkvault.core.embedding_providers import EmbeddingGenerator, average_embeddings
from linkvault.core.errors import (
    EnrichmentError,
    InvalidInputError,
    NotFoundError,
    UpstreamError,
)
from linkvault.core.metadata import MetadataService, with_fallbacks
from linkvault.core.settings import Settings
from linkvault.core.task_queue import (
    BackgroundTask,
    EntityType,
    TaskStatus,
    TaskStore,
    TaskType,
)

if TYPE_CHECKING:
    from linkvault.core.storage import DB, Link

logger = logging.getLogger(__name__)

# Link text shorter than this is embedded as title + description instead
MIN_CHUNKABLE_TEXT = 50

MIN_SUMMARY_TEXT = 10
MIN_NOTE_TEXT = 50


class EnrichmentStage(str, Enum):
    """Stages of a single enrichment run."""

    CREATED = "created"
    FETCHING = "fetching"
    EXTRACTING = "extracting"
    CHUNKING = "chunking"
    EMBEDDING = "embedding"
    PERSISTED = "persisted"
    FAILED = "failed"


@dataclass
class EnrichmentRun:
    """Outcome of one enrichment request for an entity."""

    entity_type: EntityType
    entity_id: str
    stage: EnrichmentStage = EnrichmentStage.CREATED
    failed_stage: EnrichmentStage | None = None
    error: str | None = None
    retryable: bool = True
    chunk_count: int = 0
    word_count: int = 0
    backend: str | None = None
    model: str | None = None
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    deadline: float | None = None

    @property
    def succeeded(self) -> bool:
        return self.stage == EnrichmentStage.PERSISTED

    def remaining(self) -> float | None:
        """Seconds left before the umbrella timeout, or None when unbounded."""
        if self.deadline is None:
            return None
        return self.deadline - asyncio.get_running_loop().time()

    def advance(self, stage: EnrichmentStage) -> None:
        logger.debug(f"{self.entity_type.value} {self.entity_id}: {self.stage.value} -> {stage.value}")
        self.stage = stage

    def fail(self, reason: str, retryable: bool = True) -> None:
        self.failed_stage = self.stage
        self.stage = EnrichmentStage.FAILED
        self.error = reason
        self.retryable = retryable

    def to_dict(self) -> dict[str, Any]:
        return {
            "entityType": self.entity_type.value,
            "entityId": self.entity_id,
            "stage": self.stage.value,
            "failedStage": self.failed_stage.value if self.failed_stage else None,
            "error": self.error,
            "chunks": self.chunk_count,
            "wordCount": self.word_count,
            "backend": self.backend,
            "model": self.model,
        }


class EnrichmentPipeline:
    """Runs enrichment for one entity under an umbrella timeout."""

    def __init__(
        self,
        db: DB,
        metadata: MetadataService,
        embeddings: EmbeddingGenerator,
        settings: Settings,
    ) -> None:
        self.db = db
        self.metadata = metadata
        self.embeddings = embeddings
        self._timeout = settings.pipeline_timeout

    async def _run(
        self,
        run: EnrichmentRun,
        body: Callable[[EnrichmentRun], Awaitable[None]],
    ) -> EnrichmentRun:
        run.deadline = asyncio.get_running_loop().time() + self._timeout
        # wait_for cancels the body, and with it every pending sub-call
        try:
            await asyncio.wait_for(body(run), timeout=self._timeout)
        except (NotFoundError, InvalidInputError) as e:
            run.fail(str(e), retryable=False)
        except EnrichmentError as e:
            run.fail(str(e))
        except asyncio.TimeoutError:
            run.fail(f"Enrichment exceeded {self._timeout:g}s")
        except Exception as e:
            logger.exception(f"Unexpected error enriching {run.entity_type.value} {run.entity_id}")
            run.fail(f"Unexpected error: {type(e).__name__}: {e}")

        if run.succeeded:
            logger.info(
                f"Enriched {run.entity_type.value} {run.entity_id}: "
                f"{run.chunk_count} chunks via {run.backend} ({run.model})"
            )
        else:
            logger.error(
                f"Enrichment of {run.entity_type.value} {run.entity_id} failed at "
                f"{run.failed_stage.value if run.failed_stage else '?'}: {run.error}"
            )
        return run

    def _require_link(self, link_id: str) -> Link:
        link = self.db.get_link(link_id)
        if link is None:
            raise NotFoundError(f"Link {link_id} not found")
        return link

    async def _embed_and_persist_link(self, run: EnrichmentRun, link_id: str, chunks: list[str], summary: str) -> None:
        texts = chunks
        if not texts:
            if len(summary.strip()) < MIN_SUMMARY_TEXT:
                raise InvalidInputError("Not enough text to generate embeddings")
            texts = [summary.strip()]

        run.advance(EnrichmentStage.EMBEDDING)
        batch = await self.embeddings.embed(texts, run.remaining())
        run.backend = batch.backend.value
        run.model = batch.model

        self.db.save_link_embedding(
            link_id,
            average_embeddings(batch.vectors),
            batch.model,
            chunks=list(zip(chunks, batch.vectors)) if chunks else [],
        )
        run.chunk_count = len(chunks)
        run.advance(EnrichmentStage.PERSISTED)

    async def _enrich_link(self, run: EnrichmentRun) -> None:
        link = self._require_link(run.entity_id)

        run.advance(EnrichmentStage.FETCHING)
        html = await self.metadata.fetcher.fetch_html(link.url)
        if not html:
            raise UpstreamError(f"Could not fetch {link.url}")

        run.advance(EnrichmentStage.EXTRACTING)
        result = await self.metadata.extractor.extract(html, link.url, extract_content=True)
        metadata = with_fallbacks(link.url, result)
        self.db.update_link_metadata(link.id, metadata.to_dict(), metadata.favicon)

        content = result.full_content
        text = content.full_text if content else ""
        if content and text:
            self.db.save_link_content(
                link.id,
                text,
                content.word_count,
                content.content_type.value,
                content.author,
                content.published_date,
            )
            run.word_count = content.word_count

        run.advance(EnrichmentStage.CHUNKING)
        chunks = chunk_text(text, CHUNK_SIZE, CHUNK_OVERLAP) if len(text) >= MIN_CHUNKABLE_TEXT else []
        chunks = [c for c in chunks if c.strip()]
        summary = f"{link.name or metadata.title} {link.description or metadata.description}"
        await self._embed_and_persist_link(run, link.id, chunks, summary)

    async def _enrich_link_metadata(self, run: EnrichmentRun) -> None:
        link = self._require_link(run.entity_id)

        run.advance(EnrichmentStage.FETCHING)
        html = await self.metadata.fetcher.fetch_html(link.url)
        if not html:
            raise UpstreamError(f"Could not fetch {link.url}")

        run.advance(EnrichmentStage.EXTRACTING)
        result = await self.metadata.extractor.extract(html, link.url, extract_content=False)
        metadata = with_fallbacks(link.url, result)
        self.db.update_link_metadata(link.id, metadata.to_dict(), metadata.favicon)
        run.advance(EnrichmentStage.PERSISTED)

    async def _embed_link_summary(self, run: EnrichmentRun) -> None:
        link = self._require_link(run.entity_id)
        metadata = link.metadata or {}
        title = link.name or metadata.get("title", "")
        description = link.description or metadata.get("description", "")
        await self._embed_and_persist_link(run, link.id, [], f"{title} {description}")

    async def _enrich_note(self, run: EnrichmentRun) -> None:
        note = self.db.get_note(run.entity_id)
        if note is None:
            raise NotFoundError(f"Note {run.entity_id} not found")

        text = note.embedding_text
        if len(text) < MIN_NOTE_TEXT:
            raise InvalidInputError("Note content too short for embeddings")

        run.advance(EnrichmentStage.CHUNKING)
        chunks = [c for c in chunk_text(text, CHUNK_SIZE, CHUNK_OVERLAP) if c.strip()] or [text]

        run.advance(EnrichmentStage.EMBEDDING)
        batch = await self.embeddings.embed(chunks, run.remaining())
        run.backend = batch.backend.value
        run.model = batch.model

        self.db.save_note_embedding(
            note.id,
            average_embeddings(batch.vectors),
            batch.model,
            chunks=list(zip(chunks, batch.vectors)),
        )
        run.chunk_count = len(chunks)
        run.word_count = len(text.split())
        run.advance(EnrichmentStage.PERSISTED)

    async def enrich_link(self, link_id: str) -> EnrichmentRun:
        """Full enrichment: metadata, full text, chunks and embeddings."""
        return await self._run(EnrichmentRun(EntityType.LINK, link_id), self._enrich_link)

    async def enrich_link_metadata(self, link_id: str) -> EnrichmentRun:
        """Refresh metadata and favicon only."""
        return await self._run(EnrichmentRun(EntityType.LINK, link_id), self._enrich_link_metadata)

    async def embed_link_summary(self, link_id: str) -> EnrichmentRun:
        """Embed the stored title and description without fetching."""
        return await self._run(EnrichmentRun(EntityType.LINK, link_id), self._embed_link_summary)

    async def enrich_note(self, note_id: str) -> EnrichmentRun:
        return await self._run(EnrichmentRun(EntityType.NOTE, note_id), self._enrich_note)


@dataclass
class WorkerReport:
    processed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "processed": len(self.processed),
            "failed": len(self.failed),
            "taskIds": {"processed": self.processed, "failed": self.failed},
        }


class TaskWorker:
    """Executes claimed background tasks and records their outcome."""

    def __init__(self, store: TaskStore, pipeline: EnrichmentPipeline) -> None:
        self.store = store
        self.pipeline = pipeline

    async def execute(self, task: BackgroundTask) -> EnrichmentRun:
        expected = {
            TaskType.LINK_METADATA: EntityType.LINK,
            TaskType.LINK_EMBEDDINGS: EntityType.LINK,
            TaskType.REFRESH_LINK_CONTENT: EntityType.LINK,
            TaskType.NOTE_EMBEDDINGS: EntityType.NOTE,
            TaskType.REFRESH_NOTE_CONTENT: EntityType.NOTE,
        }[task.task_type]
        if task.entity_type != expected:
            run = EnrichmentRun(task.entity_type, task.entity_id)
            run.fail(
                f"Task type {task.task_type.value} does not apply to {task.entity_type.value}",
                retryable=False,
            )
            return run

        if task.task_type == TaskType.LINK_METADATA:
            return await self.pipeline.enrich_link_metadata(task.entity_id)
        if task.task_type == TaskType.LINK_EMBEDDINGS:
            return await self.pipeline.embed_link_summary(task.entity_id)
        if task.task_type == TaskType.REFRESH_LINK_CONTENT:
            return await self.pipeline.enrich_link(task.entity_id)
        return await self.pipeline.enrich_note(task.entity_id)

    async def run_task(self, task: BackgroundTask) -> bool:
        """Run a task that is already marked processing. Returns success."""
        logger.info(f"Processing task {task.id} ({task.task_type.value} {task.entity_id})")
        run = await self.execute(task)
        if run.succeeded:
            self.store.complete(task.id, run.to_dict())
            return True
        self.store.fail(task.id, run.error or "Enrichment failed", should_retry=run.retryable)
        return False

    async def run_pending(self, max_tasks: int = 10, user_id: str | None = None) -> WorkerReport:
        """Claim up to ``max_tasks`` pending tasks, then run them in order.

        Claiming first keeps a task that fails and returns to pending from
        being picked up again within the same run.
        """
        claimed: list[BackgroundTask] = []
        for _ in range(max(0, max_tasks)):
            task = self.store.claim_next(user_id)
            if task is None:
                break
            claimed.append(task)

        report = WorkerReport()
        for task in claimed:
            if await self.run_task(task):
                report.processed.append(task.id)
            else:
                report.failed.append(task.id)
        return report


class BackgroundExecutor:
    """In-process work queue draining task ids with a few worker coroutines.

    ``submit`` never blocks; a task id is only run if it can still be claimed
    (pending -> processing), so duplicate submissions are harmless. Tasks that
    fail and go back to pending are re-submitted after ``2 ** retry_count``
    seconds.
    """

    def __init__(self, store: TaskStore, worker: TaskWorker, concurrency: int = 2) -> None:
        self.store = store
        self.worker = worker
        self.concurrency = max(1, concurrency)
        self._queue: asyncio.Queue[str] | None = None
        self._workers: list[asyncio.Task] = []
        self._retry_handles: set[asyncio.TimerHandle] = set()

    @property
    def running(self) -> bool:
        return bool(self._workers)

    def start(self) -> None:
        """Start workers on the running loop and pick up leftover tasks.

        Tasks still marked processing were interrupted mid-run and go back
        to pending first.
        """
        if self.running:
            return
        self.store.release_processing()
        self._queue = asyncio.Queue()
        self._workers = [
            asyncio.create_task(self._work(), name=f"enrichment-worker-{i}")
            for i in range(self.concurrency)
        ]
        leftover = self.store.list_tasks(statuses=[TaskStatus.PENDING], limit=1000)
        for task in reversed(leftover):
            self.submit(task.id)
        logger.info(f"Background executor started ({self.concurrency} workers, {len(leftover)} pending)")

    def submit(self, task_id: str) -> None:
        if self._queue is None:
            logger.debug(f"Executor not running; task {task_id} stays pending")
            return
        self._queue.put_nowait(task_id)

    async def join(self) -> None:
        """Wait until every submitted task id has been handled."""
        if self._queue is not None:
            await self._queue.join()

    async def stop(self) -> None:
        for handle in self._retry_handles:
            handle.cancel()
        self._retry_handles.clear()
        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        self._queue = None

    async def _work(self) -> None:
        assert self._queue is not None
        queue = self._queue
        while True:
            task_id = await queue.get()
            try:
                await self._process(task_id)
            except Exception:
                logger.exception(f"Executor failed to process task {task_id}")
            finally:
                queue.task_done()

    def _schedule_retry(self, task_id: str, delay: float) -> None:
        def fire() -> None:
            self._retry_handles.discard(handle)
            self.submit(task_id)

        handle = asyncio.get_running_loop().call_later(delay, fire)
        self._retry_handles.add(handle)

    async def _process(self, task_id: str) -> None:
        task = self.store.claim(task_id)
        if task is None:
            return
        await self.worker.run_task(task)

        updated = self.store.get(task_id)
        if updated is not None and updated.status == TaskStatus.PENDING:
            delay = 2 ** updated.retry_count
            self._schedule_retry(task_id, delay)
            logger.info(f"Task {task_id} re-submitted in {delay}s")
