"""Link and note operations that schedule enrichment after persisting.

The base record is written and returned first; enrichment is enqueued and
submitted afterwards and can never fail the create/update call.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Any, Protocol

from linkvault.core.errors import EnrichmentError, NotFoundError
from linkvault.core.html_fetcher import normalize_url
from linkvault.core.storage import DB, Link, Note
from linkvault.core.task_queue import (
    BackgroundTask,
    EntityStatus,
    EntityType,
    TaskStore,
    TaskType,
    polling_candidates,
)

logger = logging.getLogger(__name__)


class TaskExecutor(Protocol):
    def submit(self, task_id: str) -> None:
        ...


class Vault:
    def __init__(self, db: DB, store: TaskStore, executor: TaskExecutor) -> None:
        self.db = db
        self.store = store
        self.executor = executor

    def schedule(
        self,
        user_id: str,
        task_type: TaskType,
        entity_type: EntityType,
        entity_id: str,
        payload: dict[str, Any] | None = None,
        priority: int = 5,
    ) -> BackgroundTask | None:
        """Enqueue and submit an enrichment task; errors are logged, not raised."""
        try:
            task, _ = self.store.enqueue(user_id, task_type, entity_type, entity_id, payload, priority)
            self.executor.submit(task.id)
            return task
        except (EnrichmentError, sqlite3.Error) as e:
            logger.error(f"Could not schedule {task_type.value} for {entity_type.value} {entity_id}: {e}")
            return None

    # ---- links ----

    def get_link(self, link_id: str) -> Link:
        link = self.db.get_link(link_id)
        if link is None:
            raise NotFoundError(f"Link {link_id} not found")
        return link

    def create_link(
        self,
        user_id: str,
        url: str,
        name: str = "",
        description: str = "",
        folder_id: str | None = None,
        tag_ids: list[str] | None = None,
    ) -> Link:
        link = self.db.create_link(user_id, normalize_url(url), name, description, folder_id, tag_ids)
        self.schedule(user_id, TaskType.REFRESH_LINK_CONTENT, EntityType.LINK, link.id, {"url": link.url})
        return link

    def update_link(self, link_id: str, **fields: Any) -> Link:
        current = self.get_link(link_id)
        if fields.get("url"):
            fields["url"] = normalize_url(fields["url"])
        link = self.db.update_link(link_id, **fields)
        if link is None:
            raise NotFoundError(f"Link {link_id} not found")
        if link.url != current.url:
            self.schedule(link.user_id, TaskType.REFRESH_LINK_CONTENT, EntityType.LINK, link.id, {"url": link.url})
        return link

    def refresh_link(self, link_id: str) -> BackgroundTask | None:
        link = self.get_link(link_id)
        return self.schedule(
            link.user_id, TaskType.REFRESH_LINK_CONTENT, EntityType.LINK, link.id, {"url": link.url}
        )

    def link_polling_status(self, user_id: str) -> dict[str, EntityStatus]:
        """Status for the user's links that are still waiting on enrichment."""
        ids = polling_candidates(self.db.list_links(user_id))
        return self.store.batch_status(ids, user_id, EntityType.LINK)

    # ---- notes ----

    def get_note(self, note_id: str) -> Note:
        note = self.db.get_note(note_id)
        if note is None:
            raise NotFoundError(f"Note {note_id} not found")
        return note

    def create_note(
        self,
        user_id: str,
        title: str = "",
        content: str = "",
        folder_id: str | None = None,
        tag_ids: list[str] | None = None,
    ) -> Note:
        note = self.db.create_note(user_id, title, content, folder_id, tag_ids)
        self.schedule(user_id, TaskType.NOTE_EMBEDDINGS, EntityType.NOTE, note.id)
        return note

    def update_note(self, note_id: str, **fields: Any) -> Note:
        current = self.get_note(note_id)
        note = self.db.update_note(note_id, **fields)
        if note is None:
            raise NotFoundError(f"Note {note_id} not found")
        if note.embedding_text != current.embedding_text:
            self.schedule(note.user_id, TaskType.REFRESH_NOTE_CONTENT, EntityType.NOTE, note.id)
        return note
