from __future__ import annotations

import logging
from typing import Any

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse

from linkvault.core.chunking import CHUNK_OVERLAP, CHUNK_SIZE, Chunk, chunk_texts, validate_chunk_size
from linkvault.core.embedding_providers import MAX_TEXT_LENGTH
from linkvault.core.errors import InvalidInputError, NotFoundError, OperationTimeoutError
from linkvault.core.pipeline import BackgroundExecutor
from linkvault.core.resilience import with_timeout
from linkvault.core.services import Services, build_services
from linkvault.core.settings import Settings
from linkvault.core.storage import init_db
from linkvault.core.task_queue import POLL_INTERVAL_SECONDS, EntityType, get_task_store

logger = logging.getLogger(__name__)

app = FastAPI(title="linkvault")

_services: Services | None = None


@app.on_event("startup")
async def _startup() -> None:
    global _services
    settings = Settings.from_env()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    db = init_db(settings)
    _services = build_services(settings, db, get_task_store())
    if settings.enable_background_worker and isinstance(_services.executor, BackgroundExecutor):
        _services.executor.start()


@app.on_event("shutdown")
async def _shutdown() -> None:
    if _services is not None:
        await _services.close()


def get_services() -> Services:
    assert _services is not None, "Services not initialized"
    return _services


@app.exception_handler(InvalidInputError)
async def _invalid_input(request: Request, exc: InvalidInputError) -> JSONResponse:
    return JSONResponse({"error": str(exc)}, status_code=400)


@app.exception_handler(NotFoundError)
async def _not_found(request: Request, exc: NotFoundError) -> JSONResponse:
    return JSONResponse({"error": str(exc)}, status_code=404)


@app.exception_handler(OperationTimeoutError)
async def _timeout(request: Request, exc: OperationTimeoutError) -> JSONResponse:
    logger.warning(f"{request.method} {request.url.path} timed out: {exc}")
    return JSONResponse({"error": str(exc)}, status_code=504)


async def _json_body(request: Request) -> dict[str, Any]:
    raw = await request.body()
    if not raw.strip():
        return {}
    try:
        body = await request.json()
    except ValueError as e:
        raise InvalidInputError("Request body must be valid JSON") from e
    if not isinstance(body, dict):
        raise InvalidInputError("Request body must be a JSON object")
    return body


def _int_field(body: dict[str, Any], name: str, default: int) -> int:
    value = body.get(name, default)
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, (int, float)) or int(value) != value:
        raise InvalidInputError(f"{name} must be an integer")
    return int(value)


def _require(body: dict[str, Any], *names: str) -> None:
    missing = [name for name in names if not body.get(name)]
    if missing:
        raise InvalidInputError(f"Missing required fields: {', '.join(missing)}")


# ==================== Metadata ====================


@app.get("/api/metadata")
async def api_metadata(
    url: str = "",
    extractContent: bool = False,
    services: Services = Depends(get_services),
):
    """Metadata (and optionally full content) for a URL.

    Total fetch failure still answers 200 with a hostname-based payload.
    """
    if not url.strip():
        raise InvalidInputError("URL is required")
    result = await services.metadata.lookup(url, extract_content=extractContent)
    return result.to_dict()


# ==================== Embeddings ====================


@app.post("/api/embeddings")
async def api_generate_embeddings(request: Request, services: Services = Depends(get_services)):
    body = await _json_body(request)
    texts = body.get("texts")
    if not isinstance(texts, list) or not texts:
        raise InvalidInputError("texts array is required and must not be empty")

    chunked = bool(body.get("chunk", False))
    chunk_size = validate_chunk_size(_int_field(body, "chunkSize", CHUNK_SIZE))
    overlap = _int_field(body, "chunkOverlap", CHUNK_OVERLAP)
    if overlap < 0:
        raise InvalidInputError("chunkOverlap must not be negative")

    valid = [t.strip() for t in texts if isinstance(t, str) and t.strip()]
    if not valid:
        return {"embeddings": [], "model": "none", "dimensions": 0, "chunked": chunked, "totalChunks": 0}

    if chunked:
        chunks = chunk_texts(valid, chunk_size, overlap)
    else:
        chunks = [Chunk(text=text, chunk_index=0, parent_index=i) for i, text in enumerate(valid)]

    timeout = services.settings.embedding_timeout
    batch = await with_timeout(
        services.embeddings.embed([c.text for c in chunks], timeout),
        timeout,
        f"Embedding generation timed out after {timeout:g}s",
    )
    return {
        "embeddings": [
            {**chunk.to_dict(), "embedding": vector} for chunk, vector in zip(chunks, batch.vectors)
        ],
        "model": batch.model,
        "dimensions": batch.dimensions,
        "backend": batch.backend.value,
        "chunked": chunked,
        "totalChunks": len(chunks),
    }


@app.get("/api/embeddings")
async def api_query_embedding(query: str = "", services: Services = Depends(get_services)):
    """Embedding for a single search query."""
    if not query.strip():
        raise InvalidInputError("query parameter is required")
    if len(query) > MAX_TEXT_LENGTH:
        raise InvalidInputError(f"Query too long (max {MAX_TEXT_LENGTH} characters)")

    timeout = services.settings.embedding_timeout
    batch = await with_timeout(
        services.embeddings.embed_query(query, timeout),
        timeout,
        f"Embedding generation timed out after {timeout:g}s",
    )
    return {
        "query": query,
        "embedding": batch.vectors[0],
        "model": batch.model,
        "dimensions": batch.dimensions,
        "backend": batch.backend.value,
    }


# ==================== Background Tasks ====================


@app.post("/api/tasks")
async def api_enqueue_task(request: Request, services: Services = Depends(get_services)):
    body = await _json_body(request)
    _require(body, "userId", "taskType", "entityType", "entityId")
    payload = body.get("payload") or {}
    if not isinstance(payload, dict):
        raise InvalidInputError("payload must be an object")

    task, created = services.store.enqueue(
        user_id=str(body["userId"]),
        task_type=body["taskType"],
        entity_type=body["entityType"],
        entity_id=str(body["entityId"]),
        payload=payload,
        priority=_int_field(body, "priority", 5),
        max_retries=_int_field(body, "maxRetries", 3),
    )
    services.executor.submit(task.id)
    return {
        "task": task.to_dict(),
        "created": created,
        "message": "Task created" if created else "Task already exists",
    }


@app.get("/api/tasks")
async def api_list_tasks(
    userId: str = "",
    entityId: str = "",
    entityType: str = "",
    status: str = "",
    limit: int = 50,
    services: Services = Depends(get_services),
):
    statuses = [s.strip() for s in status.split(",") if s.strip()]
    tasks = services.store.list_tasks(
        user_id=userId or None,
        entity_id=entityId or None,
        entity_type=entityType or None,
        statuses=statuses,
        limit=max(1, min(limit, 500)),
    )
    return {"tasks": [t.to_dict() for t in tasks]}


@app.post("/api/tasks/worker")
async def api_run_worker(request: Request, services: Services = Depends(get_services)):
    """Process pending tasks right away instead of waiting for the executor."""
    body = await _json_body(request)
    max_tasks = max(1, min(_int_field(body, "maxTasks", 10), 100))
    user_id = body.get("userId") or None

    report = await services.worker.run_pending(max_tasks, user_id)
    if not report.processed and not report.failed:
        return {"processed": 0, "message": "No pending tasks"}
    return report.to_dict()


@app.post("/api/tasks/status")
async def api_batch_status(request: Request, services: Services = Depends(get_services)):
    body = await _json_body(request)
    entity_ids = body.get("entityIds")
    if not isinstance(entity_ids, list) or not all(isinstance(i, str) for i in entity_ids):
        raise InvalidInputError("entityIds must be an array of strings")

    statuses = services.store.batch_status(
        entity_ids,
        user_id=body.get("userId") or None,
        entity_type=body.get("entityType") or EntityType.LINK,
    )
    return {"statuses": {entity_id: s.to_dict() for entity_id, s in statuses.items()}}


@app.get("/api/tasks/status/{entity_id}")
async def api_entity_status(
    entity_id: str,
    userId: str = "",
    entityType: str = EntityType.LINK.value,
    services: Services = Depends(get_services),
):
    return services.store.status(entity_id, userId or None, entityType).to_dict()


@app.get("/api/tasks/{task_id}")
async def api_get_task(task_id: str, services: Services = Depends(get_services)):
    task = services.store.get(task_id)
    if task is None:
        raise NotFoundError(f"Task {task_id} not found")
    return task.to_dict()


# ==================== Links & Notes ====================


@app.post("/api/links", status_code=201)
async def api_create_link(request: Request, services: Services = Depends(get_services)):
    """Save a link; enrichment runs afterwards in the background."""
    body = await _json_body(request)
    _require(body, "userId", "url")
    link = services.vault.create_link(
        user_id=str(body["userId"]),
        url=str(body["url"]),
        name=body.get("name") or "",
        description=body.get("description") or "",
        folder_id=body.get("folderId"),
        tag_ids=body.get("tagIds") or [],
    )
    return link.to_dict()


@app.get("/api/links/polling")
async def api_link_polling(userId: str, services: Services = Depends(get_services)):
    """Status of the links that still lack both an embedding and content."""
    statuses = services.vault.link_polling_status(userId)
    return {
        "statuses": {link_id: s.to_dict() for link_id, s in statuses.items()},
        "pollIntervalSeconds": POLL_INTERVAL_SECONDS,
    }


@app.get("/api/links/{link_id}")
async def api_get_link(link_id: str, embedding: bool = False, services: Services = Depends(get_services)):
    return services.vault.get_link(link_id).to_dict(include_embedding=embedding)


@app.patch("/api/links/{link_id}")
async def api_update_link(link_id: str, request: Request, services: Services = Depends(get_services)):
    body = await _json_body(request)
    link = services.vault.update_link(
        link_id,
        url=body.get("url"),
        name=body.get("name"),
        description=body.get("description"),
        folder_id=body.get("folderId"),
        tag_ids=body.get("tagIds"),
    )
    return link.to_dict()


@app.post("/api/links/{link_id}/refresh")
async def api_refresh_link(link_id: str, services: Services = Depends(get_services)):
    task = services.vault.refresh_link(link_id)
    return {"task": task.to_dict() if task else None}


@app.post("/api/notes", status_code=201)
async def api_create_note(request: Request, services: Services = Depends(get_services)):
    body = await _json_body(request)
    _require(body, "userId")
    note = services.vault.create_note(
        user_id=str(body["userId"]),
        title=body.get("title") or "",
        content=body.get("content") or "",
        folder_id=body.get("folderId"),
        tag_ids=body.get("tagIds") or [],
    )
    return note.to_dict()


@app.get("/api/notes/{note_id}")
async def api_get_note(note_id: str, embedding: bool = False, services: Services = Depends(get_services)):
    return services.vault.get_note(note_id).to_dict(include_embedding=embedding)


@app.patch("/api/notes/{note_id}")
async def api_update_note(note_id: str, request: Request, services: Services = Depends(get_services)):
    body = await _json_body(request)
    note = services.vault.update_note(
        note_id,
        title=body.get("title"),
        content=body.get("content"),
        folder_id=body.get("folderId"),
        tag_ids=body.get("tagIds"),
    )
    return note.to_dict()


# ==================== Search & Providers ====================


@app.post("/api/search/semantic")
async def api_semantic_search(request: Request, services: Services = Depends(get_services)):
    """Nearest links and notes for a free-text query."""
    body = await _json_body(request)
    _require(body, "query", "userId")
    query = str(body["query"]).strip()
    if len(query) > MAX_TEXT_LENGTH:
        raise InvalidInputError(f"Query too long (max {MAX_TEXT_LENGTH} characters)")
    limit = max(1, min(_int_field(body, "limit", 20), 100))
    threshold = body.get("threshold", 0.5)
    if isinstance(threshold, bool) or not isinstance(threshold, (int, float)):
        raise InvalidInputError("threshold must be a number")

    timeout = services.settings.embedding_timeout
    batch = await with_timeout(
        services.embeddings.embed_query(query, timeout),
        timeout,
        f"Embedding generation timed out after {timeout:g}s",
    )
    results = services.db.semantic_search(batch.vectors[0], str(body["userId"]), limit, float(threshold))
    return {"query": query, "results": results, "model": batch.model, "backend": batch.backend.value}


@app.get("/api/providers/health")
async def api_providers_health(services: Services = Depends(get_services)):
    """Health of the remote embedding provider and the local fallback."""
    results = await services.embeddings.health_check()
    return {"providers": [r.to_dict() for r in results]}
