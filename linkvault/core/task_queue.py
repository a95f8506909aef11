"""Background task queue and enrichment status tracking.

Provides:
- BackgroundTask and TaskStore for durable, retryable enrichment tasks
- EntityStatus / batch_status() for the cooperative polling contract
- init_task_store() / get_task_store() globals sharing the DB connection
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable

from linkvault.core.errors import InvalidInputError

logger = logging.getLogger(__name__)

# Clients re-check entities still lacking enrichment at this interval
POLL_INTERVAL_SECONDS = 15

MIN_PRIORITY = 1
MAX_PRIORITY = 10
DEFAULT_PRIORITY = 5
DEFAULT_MAX_RETRIES = 3


class TaskStatus(str, Enum):
    """Status of a background task."""

    PENDING = "pending"
    PROCESSING = "processing"
    DONE = "done"
    FAILED = "failed"


class TaskType(str, Enum):
    LINK_METADATA = "link_metadata"
    LINK_EMBEDDINGS = "link_embeddings"
    REFRESH_LINK_CONTENT = "refresh_link_content"
    NOTE_EMBEDDINGS = "note_embeddings"
    REFRESH_NOTE_CONTENT = "refresh_note_content"


class EntityType(str, Enum):
    LINK = "link"
    NOTE = "note"


# Task types that count towards an entity's enrichment status
STATUS_TASK_TYPES: dict[EntityType, tuple[TaskType, ...]] = {
    EntityType.LINK: (
        TaskType.LINK_METADATA,
        TaskType.LINK_EMBEDDINGS,
        TaskType.REFRESH_LINK_CONTENT,
    ),
    EntityType.NOTE: (
        TaskType.NOTE_EMBEDDINGS,
        TaskType.REFRESH_NOTE_CONTENT,
    ),
}

CHUNK_TABLES: dict[EntityType, tuple[str, str]] = {
    EntityType.LINK: ("link_chunks", "link_id"),
    EntityType.NOTE: ("note_chunks", "note_id"),
}

ACTIVE_STATUSES = (TaskStatus.PENDING.value, TaskStatus.PROCESSING.value)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_enum(enum_cls: type[Enum], value: Any, label: str) -> Any:
    try:
        return enum_cls(value)
    except ValueError as e:
        valid = ", ".join(member.value for member in enum_cls)  # type: ignore[attr-defined]
        raise InvalidInputError(f"Invalid {label}: {value!r}. Valid values: {valid}") from e


def clamp_priority(priority: int | None) -> int:
    if priority is None:
        return DEFAULT_PRIORITY
    return max(MIN_PRIORITY, min(MAX_PRIORITY, int(priority)))


@dataclass
class BackgroundTask:
    """A unit of enrichment work for one entity."""

    id: str
    user_id: str
    task_type: TaskType
    entity_type: EntityType
    entity_id: str
    payload: dict[str, Any] = field(default_factory=dict)
    status: TaskStatus = TaskStatus.PENDING
    priority: int = DEFAULT_PRIORITY
    result: dict[str, Any] | None = None
    error_message: str | None = None
    retry_count: int = 0
    max_retries: int = DEFAULT_MAX_RETRIES
    started_at: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)

    def touch(self) -> None:
        self.updated_at = _now()

    @property
    def can_retry(self) -> bool:
        return self.retry_count < self.max_retries

    def to_dict(self) -> dict[str, Any]:
        """Convert to dict for JSON serialization."""
        return {
            "id": self.id,
            "userId": self.user_id,
            "taskType": self.task_type.value,
            "entityType": self.entity_type.value,
            "entityId": self.entity_id,
            "payload": self.payload,
            "status": self.status.value,
            "priority": self.priority,
            "result": self.result,
            "errorMessage": self.error_message,
            "retryCount": self.retry_count,
            "maxRetries": self.max_retries,
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> BackgroundTask:
        """Create BackgroundTask from database row."""
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            task_type=TaskType(row["task_type"]),
            entity_type=EntityType(row["entity_type"]),
            entity_id=row["entity_id"],
            payload=json.loads(row["payload"] or "{}"),
            status=TaskStatus(row["status"]),
            priority=row["priority"],
            result=json.loads(row["result"]) if row["result"] else None,
            error_message=row["error_message"],
            retry_count=row["retry_count"],
            max_retries=row["max_retries"],
            started_at=datetime.fromisoformat(row["started_at"]) if row["started_at"] else None,
            completed_at=datetime.fromisoformat(row["completed_at"]) if row["completed_at"] else None,
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )


@dataclass
class EntityStatus:
    """Enrichment status of one link or note, as shown by progress badges."""

    has_chunks: bool = False
    is_processing: bool = False
    is_pending: bool = False
    has_failed: bool = False

    def to_dict(self) -> dict[str, bool]:
        return {
            "hasChunks": self.has_chunks,
            "isProcessing": self.is_processing,
            "isPending": self.is_pending,
            "hasFailed": self.has_failed,
        }


class TaskStore:
    """Store for BackgroundTasks backed by the background_tasks table. Thread-safe.

    The table is the source of truth; state transitions are compare-and-set
    updates so a task is only ever claimed by one worker.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn
        self._lock = threading.Lock()

    def _persist(self, task: BackgroundTask) -> None:
        """Save or update task in DB. Must be called within lock."""
        self._conn.execute(
            """
            INSERT INTO background_tasks (
                id, user_id, task_type, entity_type, entity_id, payload, status, priority,
                result, error_message, retry_count, max_retries, started_at, completed_at,
                created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                status = excluded.status,
                priority = excluded.priority,
                result = excluded.result,
                error_message = excluded.error_message,
                retry_count = excluded.retry_count,
                started_at = excluded.started_at,
                completed_at = excluded.completed_at,
                updated_at = excluded.updated_at
            """,
            (
                task.id,
                task.user_id,
                task.task_type.value,
                task.entity_type.value,
                task.entity_id,
                json.dumps(task.payload),
                task.status.value,
                task.priority,
                json.dumps(task.result) if task.result is not None else None,
                task.error_message,
                task.retry_count,
                task.max_retries,
                task.started_at.isoformat() if task.started_at else None,
                task.completed_at.isoformat() if task.completed_at else None,
                task.created_at.isoformat(),
                task.updated_at.isoformat(),
            ),
        )
        self._conn.commit()

    def _get(self, task_id: str) -> BackgroundTask | None:
        row = self._conn.execute("SELECT * FROM background_tasks WHERE id = ?", (task_id,)).fetchone()
        return BackgroundTask.from_row(row) if row else None

    def get(self, task_id: str) -> BackgroundTask | None:
        """Get task by ID, or None if not found."""
        with self._lock:
            return self._get(task_id)

    def enqueue(
        self,
        user_id: str,
        task_type: TaskType | str,
        entity_type: EntityType | str,
        entity_id: str,
        payload: dict[str, Any] | None = None,
        priority: int | None = DEFAULT_PRIORITY,
        max_retries: int | None = DEFAULT_MAX_RETRIES,
    ) -> tuple[BackgroundTask, bool]:
        """Create a pending task unless one is already pending or processing.

        Returns:
            (task, created). ``created`` is False when an active task for the
            same user, entity and task type already existed.
        """
        task_type = _parse_enum(TaskType, task_type, "taskType")
        entity_type = _parse_enum(EntityType, entity_type, "entityType")
        if not user_id or not entity_id:
            raise InvalidInputError("userId and entityId are required")

        with self._lock:
            row = self._conn.execute(
                """
                SELECT * FROM background_tasks
                WHERE user_id = ? AND entity_type = ? AND entity_id = ? AND task_type = ?
                  AND status IN (?, ?)
                ORDER BY created_at DESC
                LIMIT 1
                """,
                (user_id, entity_type.value, entity_id, task_type.value, *ACTIVE_STATUSES),
            ).fetchone()
            if row is not None:
                return BackgroundTask.from_row(row), False

            task = BackgroundTask(
                id=str(uuid.uuid4()),
                user_id=user_id,
                task_type=task_type,
                entity_type=entity_type,
                entity_id=entity_id,
                payload=dict(payload or {}),
                priority=clamp_priority(priority),
                max_retries=DEFAULT_MAX_RETRIES if max_retries is None else max(0, int(max_retries)),
            )
            self._persist(task)

        logger.info(f"Enqueued {task.task_type.value} task {task.id} for {entity_type.value} {entity_id}")
        return task, True

    def _mark_processing(self, task_id: str) -> BackgroundTask | None:
        """Compare-and-set pending -> processing. Must be called within lock."""
        now = _now().isoformat()
        cur = self._conn.execute(
            """
            UPDATE background_tasks SET status = ?, started_at = ?, updated_at = ?
            WHERE id = ? AND status = ?
            """,
            (TaskStatus.PROCESSING.value, now, now, task_id, TaskStatus.PENDING.value),
        )
        self._conn.commit()
        if cur.rowcount == 0:
            return None
        return self._get(task_id)

    def release_processing(self) -> int:
        """Put tasks left processing by a previous process back to pending.

        Only safe when no worker of this store is running.
        """
        now = _now().isoformat()
        with self._lock:
            cur = self._conn.execute(
                """
                UPDATE background_tasks SET status = ?, started_at = NULL, updated_at = ?
                WHERE status = ?
                """,
                (TaskStatus.PENDING.value, now, TaskStatus.PROCESSING.value),
            )
            self._conn.commit()
        if cur.rowcount:
            logger.warning(f"Released {cur.rowcount} interrupted task(s) back to pending")
        return cur.rowcount

    def claim(self, task_id: str) -> BackgroundTask | None:
        """Claim a specific pending task. None if it is not pending anymore."""
        with self._lock:
            return self._mark_processing(task_id)

    def claim_next(self, user_id: str | None = None) -> BackgroundTask | None:
        """Claim the highest-priority, oldest pending task."""
        query = "SELECT id FROM background_tasks WHERE status = ?"
        params: list[Any] = [TaskStatus.PENDING.value]
        if user_id:
            query += " AND user_id = ?"
            params.append(user_id)
        query += " ORDER BY priority DESC, created_at ASC, rowid ASC LIMIT 1"

        with self._lock:
            row = self._conn.execute(query, params).fetchone()
            if row is None:
                return None
            return self._mark_processing(row["id"])

    def complete(self, task_id: str, result: dict[str, Any] | None = None) -> BackgroundTask | None:
        with self._lock:
            task = self._get(task_id)
            if task is None:
                return None
            task.status = TaskStatus.DONE
            task.result = result
            task.error_message = None
            task.completed_at = _now()
            task.touch()
            self._persist(task)
        logger.info(f"Task {task_id} ({task.task_type.value}) done")
        return task

    def fail(self, task_id: str, error_message: str, should_retry: bool = True) -> BackgroundTask | None:
        """Record a failure; back to pending while retries remain."""
        with self._lock:
            task = self._get(task_id)
            if task is None:
                return None
            task.error_message = error_message
            if should_retry and task.can_retry:
                task.status = TaskStatus.PENDING
                task.retry_count += 1
                task.started_at = None
            else:
                task.status = TaskStatus.FAILED
                task.completed_at = _now()
            task.touch()
            self._persist(task)

        if task.status == TaskStatus.FAILED:
            logger.error(f"Task {task_id} ({task.task_type.value}) failed: {error_message}")
        else:
            logger.warning(
                f"Task {task_id} ({task.task_type.value}) will retry "
                f"({task.retry_count}/{task.max_retries}): {error_message}"
            )
        return task

    def list_tasks(
        self,
        user_id: str | None = None,
        entity_id: str | None = None,
        entity_type: EntityType | str | None = None,
        statuses: Iterable[TaskStatus | str] | None = None,
        limit: int = 50,
    ) -> list[BackgroundTask]:
        """List tasks matching the filters, newest first."""
        query = "SELECT * FROM background_tasks WHERE 1 = 1"
        params: list[Any] = []
        if user_id:
            query += " AND user_id = ?"
            params.append(user_id)
        if entity_id:
            query += " AND entity_id = ?"
            params.append(entity_id)
        if entity_type:
            query += " AND entity_type = ?"
            params.append(_parse_enum(EntityType, entity_type, "entityType").value)
        status_values = [_parse_enum(TaskStatus, s, "status").value for s in statuses or []]
        if status_values:
            query += f" AND status IN ({', '.join('?' for _ in status_values)})"
            params.extend(status_values)
        query += " ORDER BY created_at DESC, rowid DESC LIMIT ?"
        params.append(limit)

        cur = self._conn.execute(query, params)
        return [BackgroundTask.from_row(row) for row in cur.fetchall()]

    def status(
        self,
        entity_id: str,
        user_id: str | None = None,
        entity_type: EntityType | str = EntityType.LINK,
    ) -> EntityStatus:
        return self.batch_status([entity_id], user_id, entity_type)[entity_id]

    def batch_status(
        self,
        entity_ids: Iterable[str],
        user_id: str | None = None,
        entity_type: EntityType | str = EntityType.LINK,
    ) -> dict[str, EntityStatus]:
        """Resolve enrichment status for many entities with three set queries.

        ``has_failed`` is reported while the most recent task has failed and
        no chunks exist yet.
        """
        entity_type = _parse_enum(EntityType, entity_type, "entityType")
        ids = list(dict.fromkeys(entity_ids))
        if not ids:
            return {}

        id_marks = ", ".join("?" for _ in ids)
        task_types = [t.value for t in STATUS_TASK_TYPES[entity_type]]
        type_marks = ", ".join("?" for _ in task_types)
        task_filter = f"entity_type = ? AND entity_id IN ({id_marks}) AND task_type IN ({type_marks})"
        task_params: list[Any] = [entity_type.value, *ids, *task_types]
        if user_id:
            task_filter += " AND user_id = ?"
            task_params.append(user_id)

        chunk_table, owner_column = CHUNK_TABLES[entity_type]
        with self._lock:
            with_chunks = {
                row[0]
                for row in self._conn.execute(
                    f"SELECT DISTINCT {owner_column} FROM {chunk_table} WHERE {owner_column} IN ({id_marks})",
                    ids,
                )
            }

            latest: dict[str, str] = {}
            for row in self._conn.execute(
                f"""
                SELECT entity_id, status FROM background_tasks
                WHERE {task_filter}
                ORDER BY created_at DESC, rowid DESC
                """,
                task_params,
            ):
                latest.setdefault(row["entity_id"], row["status"])

            with_failures = {
                row[0]
                for row in self._conn.execute(
                    f"SELECT DISTINCT entity_id FROM background_tasks WHERE {task_filter} AND status = ?",
                    [*task_params, TaskStatus.FAILED.value],
                )
            }

        statuses: dict[str, EntityStatus] = {}
        for entity_id in ids:
            has_chunks = entity_id in with_chunks
            current = latest.get(entity_id)
            statuses[entity_id] = EntityStatus(
                has_chunks=has_chunks,
                is_processing=current == TaskStatus.PROCESSING.value,
                is_pending=current == TaskStatus.PENDING.value,
                has_failed=current == TaskStatus.FAILED.value and entity_id in with_failures and not has_chunks,
            )
        return statuses


def polling_candidates(entities: Iterable[Any]) -> list[str]:
    """Ids of entities that still lack both an embedding and processed content.

    Anything that already has either is excluded from status polling.
    """
    candidates = []
    for entity in entities:
        has_content = getattr(entity, "has_processed_content", False)
        if entity.embedding is None and not has_content:
            candidates.append(entity.id)
    return candidates


# Global store instance
_store: TaskStore | None = None


def init_task_store(conn: sqlite3.Connection) -> None:
    """Initialize the global TaskStore with DB connection."""
    global _store
    _store = TaskStore(conn)


def get_task_store() -> TaskStore:
    """Get the global TaskStore. Must call init_task_store first."""
    if _store is None:
        raise RuntimeError("TaskStore not initialized. Call init_task_store first.")
    return _store
