from __future__ import annotations

import json
import os
import sqlite3
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import sqlite_vec

from linkvault.core.embedding_providers import deserialize_f32, serialize_f32
from linkvault.core.settings import Settings


def utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS links (
  id TEXT PRIMARY KEY,
  user_id TEXT NOT NULL,
  url TEXT NOT NULL,
  name TEXT NOT NULL DEFAULT '',
  description TEXT NOT NULL DEFAULT '',
  folder_id TEXT,
  tag_ids TEXT NOT NULL DEFAULT '[]',
  favicon TEXT,
  metadata TEXT,
  full_content TEXT,
  content_type TEXT,
  author TEXT,
  published_date TEXT,
  word_count INTEGER NOT NULL DEFAULT 0,
  embedding BLOB,
  embedding_model TEXT,
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_links_user_id ON links(user_id);

CREATE TABLE IF NOT EXISTS notes (
  id TEXT PRIMARY KEY,
  user_id TEXT NOT NULL,
  title TEXT NOT NULL DEFAULT '',
  content TEXT NOT NULL DEFAULT '',
  folder_id TEXT,
  tag_ids TEXT NOT NULL DEFAULT '[]',
  embedding BLOB,
  embedding_model TEXT,
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_notes_user_id ON notes(user_id);

CREATE TABLE IF NOT EXISTS link_chunks (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  link_id TEXT NOT NULL REFERENCES links(id) ON DELETE CASCADE,
  user_id TEXT NOT NULL,
  chunk_index INTEGER NOT NULL,
  chunk_text TEXT NOT NULL,
  embedding BLOB,
  embedding_model TEXT,
  created_at TEXT NOT NULL,
  UNIQUE(link_id, chunk_index)
);
CREATE INDEX IF NOT EXISTS idx_link_chunks_link_id ON link_chunks(link_id);

CREATE TABLE IF NOT EXISTS note_chunks (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  note_id TEXT NOT NULL REFERENCES notes(id) ON DELETE CASCADE,
  user_id TEXT NOT NULL,
  chunk_index INTEGER NOT NULL,
  chunk_text TEXT NOT NULL,
  embedding BLOB,
  embedding_model TEXT,
  created_at TEXT NOT NULL,
  UNIQUE(note_id, chunk_index)
);
CREATE INDEX IF NOT EXISTS idx_note_chunks_note_id ON note_chunks(note_id);

CREATE TABLE IF NOT EXISTS background_tasks (
  id TEXT PRIMARY KEY,
  user_id TEXT NOT NULL,
  task_type TEXT NOT NULL,
  entity_type TEXT NOT NULL,
  entity_id TEXT NOT NULL,
  payload TEXT NOT NULL DEFAULT '{}',
  status TEXT NOT NULL DEFAULT 'pending',
  priority INTEGER NOT NULL DEFAULT 5,
  result TEXT,
  error_message TEXT,
  retry_count INTEGER NOT NULL DEFAULT 0,
  max_retries INTEGER NOT NULL DEFAULT 3,
  started_at TEXT,
  completed_at TEXT,
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_background_tasks_entity
  ON background_tasks(entity_id, entity_type, task_type, status);
CREATE INDEX IF NOT EXISTS idx_background_tasks_status
  ON background_tasks(status, priority DESC, created_at);
"""


def vec_sql(dimensions: int) -> str:
    """vec0 tables keyed by the owning row's rowid."""
    return f"""
CREATE VIRTUAL TABLE IF NOT EXISTS vec_links USING vec0(
  embedding float[{dimensions}] distance_metric=cosine
);

CREATE VIRTUAL TABLE IF NOT EXISTS vec_notes USING vec0(
  embedding float[{dimensions}] distance_metric=cosine
);
"""


def load_vec_extension(conn: sqlite3.Connection) -> None:
    conn.enable_load_extension(True)
    sqlite_vec.load(conn)
    conn.enable_load_extension(False)


@dataclass
class Link:
    id: str
    user_id: str
    url: str
    name: str = ""
    description: str = ""
    folder_id: str | None = None
    tag_ids: list[str] = field(default_factory=list)
    favicon: str | None = None
    metadata: dict[str, Any] | None = None
    full_content: str | None = None
    content_type: str | None = None
    author: str | None = None
    published_date: str | None = None
    word_count: int = 0
    embedding: list[float] | None = None
    embedding_model: str | None = None
    created_at: str = field(default_factory=utcnow)
    updated_at: str = field(default_factory=utcnow)

    @property
    def has_processed_content(self) -> bool:
        return self.word_count > 0 or bool(self.full_content)

    def to_dict(self, include_embedding: bool = False) -> dict[str, Any]:
        """Convert to dict for JSON serialization."""
        data = {
            "id": self.id,
            "userId": self.user_id,
            "url": self.url,
            "name": self.name,
            "description": self.description,
            "folderId": self.folder_id,
            "tagIds": self.tag_ids,
            "favicon": self.favicon,
            "metadata": self.metadata,
            "fullContent": self.full_content,
            "contentType": self.content_type,
            "author": self.author,
            "publishedDate": self.published_date,
            "wordCount": self.word_count,
            "hasEmbedding": self.embedding is not None,
            "embeddingModel": self.embedding_model,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }
        if include_embedding:
            data["embedding"] = self.embedding
        return data

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Link:
        """Create Link from database row."""
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            url=row["url"],
            name=row["name"],
            description=row["description"],
            folder_id=row["folder_id"],
            tag_ids=json.loads(row["tag_ids"] or "[]"),
            favicon=row["favicon"],
            metadata=json.loads(row["metadata"]) if row["metadata"] else None,
            full_content=row["full_content"],
            content_type=row["content_type"],
            author=row["author"],
            published_date=row["published_date"],
            word_count=row["word_count"],
            embedding=deserialize_f32(row["embedding"]) if row["embedding"] else None,
            embedding_model=row["embedding_model"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


@dataclass
class Note:
    id: str
    user_id: str
    title: str = ""
    content: str = ""
    folder_id: str | None = None
    tag_ids: list[str] = field(default_factory=list)
    embedding: list[float] | None = None
    embedding_model: str | None = None
    created_at: str = field(default_factory=utcnow)
    updated_at: str = field(default_factory=utcnow)

    @property
    def embedding_text(self) -> str:
        return f"{self.title}\n\n{self.content}".strip()

    def to_dict(self, include_embedding: bool = False) -> dict[str, Any]:
        data = {
            "id": self.id,
            "userId": self.user_id,
            "title": self.title,
            "content": self.content,
            "folderId": self.folder_id,
            "tagIds": self.tag_ids,
            "hasEmbedding": self.embedding is not None,
            "embeddingModel": self.embedding_model,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }
        if include_embedding:
            data["embedding"] = self.embedding
        return data

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Note:
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            title=row["title"],
            content=row["content"],
            folder_id=row["folder_id"],
            tag_ids=json.loads(row["tag_ids"] or "[]"),
            embedding=deserialize_f32(row["embedding"]) if row["embedding"] else None,
            embedding_model=row["embedding_model"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


@dataclass
class DB:
    conn: sqlite3.Connection
    dimensions: int = 3072

    def init(self) -> None:
        self.conn.executescript(SCHEMA_SQL)
        self.conn.executescript(vec_sql(self.dimensions))
        self.conn.commit()

    def get_stats(self) -> dict[str, Any]:
        stats = {}
        for table in ("links", "notes", "link_chunks", "note_chunks", "background_tasks"):
            stats[table] = self.conn.execute(f"SELECT count(*) FROM {table}").fetchone()[0]
        return stats

    # ---- links ----

    def create_link(
        self,
        user_id: str,
        url: str,
        name: str = "",
        description: str = "",
        folder_id: str | None = None,
        tag_ids: list[str] | None = None,
    ) -> Link:
        link = Link(
            id=str(uuid.uuid4()),
            user_id=user_id,
            url=url,
            name=name or "",
            description=description or "",
            folder_id=folder_id,
            tag_ids=list(tag_ids or []),
        )
        self.conn.execute(
            """
            INSERT INTO links (id, user_id, url, name, description, folder_id, tag_ids, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                link.id,
                link.user_id,
                link.url,
                link.name,
                link.description,
                link.folder_id,
                json.dumps(link.tag_ids),
                link.created_at,
                link.updated_at,
            ),
        )
        self.conn.commit()
        return link

    def get_link(self, link_id: str) -> Link | None:
        row = self.conn.execute("SELECT * FROM links WHERE id = ?", (link_id,)).fetchone()
        return Link.from_row(row) if row else None

    def list_links(self, user_id: str) -> list[Link]:
        cur = self.conn.execute(
            "SELECT * FROM links WHERE user_id = ? ORDER BY created_at DESC", (user_id,)
        )
        return [Link.from_row(row) for row in cur.fetchall()]

    def update_link(self, link_id: str, **fields: Any) -> Link | None:
        """Update user-editable fields (url, name, description, folder_id, tag_ids)."""
        allowed = {"url", "name", "description", "folder_id", "tag_ids"}
        updates = {k: v for k, v in fields.items() if k in allowed and v is not None}
        if updates:
            if "tag_ids" in updates:
                updates["tag_ids"] = json.dumps(list(updates["tag_ids"]))
            assignments = ", ".join(f"{column} = ?" for column in updates)
            self.conn.execute(
                f"UPDATE links SET {assignments}, updated_at = ? WHERE id = ?",
                (*updates.values(), utcnow(), link_id),
            )
            self.conn.commit()
        return self.get_link(link_id)

    def update_link_metadata(self, link_id: str, metadata: dict[str, Any], favicon: str) -> None:
        """Store fetched metadata; fills name/description only where still empty."""
        self.conn.execute(
            """
            UPDATE links SET
              metadata = ?,
              favicon = ?,
              name = CASE WHEN name = '' THEN ? ELSE name END,
              description = CASE WHEN description = '' THEN ? ELSE description END,
              updated_at = ?
            WHERE id = ?
            """,
            (
                json.dumps(metadata),
                favicon,
                metadata.get("title") or "",
                metadata.get("description") or "",
                utcnow(),
                link_id,
            ),
        )
        self.conn.commit()

    def save_link_content(
        self,
        link_id: str,
        full_text: str,
        word_count: int,
        content_type: str | None = None,
        author: str | None = None,
        published_date: str | None = None,
    ) -> None:
        self.conn.execute(
            """
            UPDATE links SET full_content = ?, word_count = ?, content_type = ?,
                             author = ?, published_date = ?, updated_at = ?
            WHERE id = ?
            """,
            (full_text, word_count, content_type, author, published_date, utcnow(), link_id),
        )
        self.conn.commit()

    def _set_vector(self, vec_table: str, rowid: int, vector: list[float]) -> None:
        self.conn.execute(f"DELETE FROM {vec_table} WHERE rowid = ?", (rowid,))
        if len(vector) == self.dimensions and any(vector):
            self.conn.execute(
                f"INSERT INTO {vec_table}(rowid, embedding) VALUES (?, ?)",
                (rowid, serialize_f32(vector)),
            )

    def save_link_embedding(
        self,
        link_id: str,
        vector: list[float],
        model: str,
        chunks: list[tuple[str, list[float]]] | None = None,
    ) -> None:
        """Replace the link's document vector and, when given, its chunk rows."""
        row = self.conn.execute("SELECT rowid, user_id FROM links WHERE id = ?", (link_id,)).fetchone()
        if row is None:
            return
        self.conn.execute(
            "UPDATE links SET embedding = ?, embedding_model = ?, updated_at = ? WHERE id = ?",
            (serialize_f32(vector), model, utcnow(), link_id),
        )
        self._set_vector("vec_links", row["rowid"], vector)
        if chunks is not None:
            self._replace_chunks("link_chunks", "link_id", link_id, row["user_id"], chunks, model)
        self.conn.commit()

    def _replace_chunks(
        self,
        table: str,
        owner_column: str,
        owner_id: str,
        user_id: str,
        chunks: list[tuple[str, list[float]]],
        model: str,
    ) -> None:
        self.conn.execute(f"DELETE FROM {table} WHERE {owner_column} = ?", (owner_id,))
        now = utcnow()
        self.conn.executemany(
            f"""
            INSERT INTO {table} ({owner_column}, user_id, chunk_index, chunk_text, embedding, embedding_model, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (owner_id, user_id, index, text, serialize_f32(vector), model, now)
                for index, (text, vector) in enumerate(chunks)
            ],
        )

    def get_link_chunks(self, link_id: str) -> list[dict[str, Any]]:
        cur = self.conn.execute(
            """
            SELECT chunk_index, chunk_text, embedding_model FROM link_chunks
            WHERE link_id = ? ORDER BY chunk_index
            """,
            (link_id,),
        )
        return [
            {"chunk_index": r["chunk_index"], "chunk_text": r["chunk_text"], "embedding_model": r["embedding_model"]}
            for r in cur.fetchall()
        ]

    # ---- notes ----

    def create_note(
        self,
        user_id: str,
        title: str = "",
        content: str = "",
        folder_id: str | None = None,
        tag_ids: list[str] | None = None,
    ) -> Note:
        note = Note(
            id=str(uuid.uuid4()),
            user_id=user_id,
            title=title or "",
            content=content or "",
            folder_id=folder_id,
            tag_ids=list(tag_ids or []),
        )
        self.conn.execute(
            """
            INSERT INTO notes (id, user_id, title, content, folder_id, tag_ids, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                note.id,
                note.user_id,
                note.title,
                note.content,
                note.folder_id,
                json.dumps(note.tag_ids),
                note.created_at,
                note.updated_at,
            ),
        )
        self.conn.commit()
        return note

    def get_note(self, note_id: str) -> Note | None:
        row = self.conn.execute("SELECT * FROM notes WHERE id = ?", (note_id,)).fetchone()
        return Note.from_row(row) if row else None

    def update_note(self, note_id: str, **fields: Any) -> Note | None:
        allowed = {"title", "content", "folder_id", "tag_ids"}
        updates = {k: v for k, v in fields.items() if k in allowed and v is not None}
        if updates:
            if "tag_ids" in updates:
                updates["tag_ids"] = json.dumps(list(updates["tag_ids"]))
            assignments = ", ".join(f"{column} = ?" for column in updates)
            self.conn.execute(
                f"UPDATE notes SET {assignments}, updated_at = ? WHERE id = ?",
                (*updates.values(), utcnow(), note_id),
            )
            self.conn.commit()
        return self.get_note(note_id)

    def save_note_embedding(
        self,
        note_id: str,
        vector: list[float],
        model: str,
        chunks: list[tuple[str, list[float]]] | None = None,
    ) -> None:
        row = self.conn.execute("SELECT rowid, user_id FROM notes WHERE id = ?", (note_id,)).fetchone()
        if row is None:
            return
        self.conn.execute(
            "UPDATE notes SET embedding = ?, embedding_model = ?, updated_at = ? WHERE id = ?",
            (serialize_f32(vector), model, utcnow(), note_id),
        )
        self._set_vector("vec_notes", row["rowid"], vector)
        if chunks is not None:
            self._replace_chunks("note_chunks", "note_id", note_id, row["user_id"], chunks, model)
        self.conn.commit()

    # ---- search ----

    def _knn(self, vec_table: str, blob: bytes, k: int) -> dict[int, float]:
        """rowid -> cosine distance for the k nearest vectors."""
        cur = self.conn.execute(
            f"SELECT rowid, distance FROM {vec_table} WHERE embedding MATCH ? AND k = ?",
            (blob, k),
        )
        return {row["rowid"]: row["distance"] for row in cur.fetchall()}

    def semantic_search(
        self,
        query_embedding: list[float],
        user_id: str,
        limit: int = 20,
        threshold: float = 0.0,
    ) -> list[dict[str, Any]]:
        """Nearest links and notes for a query vector.

        Similarity is ``1 - cosine distance``; results below ``threshold`` are
        dropped. KNN runs over all users, so ``k`` is widened before filtering.
        """
        if len(query_embedding) != self.dimensions or not any(query_embedding):
            return []
        blob = serialize_f32(query_embedding)
        k = max(limit * 4, limit)
        results: list[dict[str, Any]] = []

        # Step 1: KNN over the vector table alone, step 2: owner rows for the user
        link_hits = self._knn("vec_links", blob, k)
        if link_hits:
            marks = ", ".join("?" for _ in link_hits)
            cur = self.conn.execute(
                f"""
                SELECT rowid, id, url, name, description, favicon FROM links
                WHERE rowid IN ({marks}) AND user_id = ?
                """,
                (*link_hits, user_id),
            )
            for row in cur.fetchall():
                results.append({
                    "type": "link",
                    "id": row["id"],
                    "title": row["name"],
                    "url": row["url"],
                    "description": row["description"],
                    "favicon": row["favicon"],
                    "similarity": 1.0 - link_hits[row["rowid"]],
                })

        note_hits = self._knn("vec_notes", blob, k)
        if note_hits:
            marks = ", ".join("?" for _ in note_hits)
            cur = self.conn.execute(
                f"""
                SELECT rowid, id, title, content FROM notes
                WHERE rowid IN ({marks}) AND user_id = ?
                """,
                (*note_hits, user_id),
            )
            for row in cur.fetchall():
                results.append({
                    "type": "note",
                    "id": row["id"],
                    "title": row["title"],
                    "description": row["content"][:200],
                    "similarity": 1.0 - note_hits[row["rowid"]],
                })

        results = [r for r in results if r["similarity"] >= threshold]
        results.sort(key=lambda r: r["similarity"], reverse=True)
        return results[:limit]


def connect(db_path: str) -> sqlite3.Connection:
    conn = sqlite3.connect(db_path, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    # sqlite-vec must be loaded into this connection
    load_vec_extension(conn)
    return conn


def init_db(settings: Settings | None = None) -> DB:
    from linkvault.core.task_queue import init_task_store

    s = settings or Settings.from_env()
    if s.db_path != ":memory:":
        os.makedirs(os.path.dirname(os.path.abspath(s.db_path)), exist_ok=True)

    conn = connect(s.db_path)
    db = DB(conn=conn, dimensions=s.embedding_dimensions)
    db.init()

    # Task store shares the connection
    init_task_store(conn)
    return db
