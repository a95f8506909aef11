from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    app_env: str
    db_path: str
    log_level: str
    provider_api_key: str
    embedding_base_url: str
    embedding_model: str
    embedding_dimensions: int
    fetch_timeout_ms: int
    metadata_deadline_ms: int
    embedding_timeout_ms: int
    oembed_timeout_ms: int
    batch_size: int
    pipeline_timeout_ms: int
    worker_concurrency: int
    enable_background_worker: bool

    @property
    def fetch_timeout(self) -> float:
        return self.fetch_timeout_ms / 1000

    @property
    def metadata_deadline(self) -> float:
        return self.metadata_deadline_ms / 1000

    @property
    def embedding_timeout(self) -> float:
        return self.embedding_timeout_ms / 1000

    @property
    def oembed_timeout(self) -> float:
        return self.oembed_timeout_ms / 1000

    @property
    def pipeline_timeout(self) -> float:
        return self.pipeline_timeout_ms / 1000

    @staticmethod
    def from_env() -> "Settings":
        def _b(name: str, default: str) -> bool:
            return os.getenv(name, default).strip() in ("1", "true", "True", "yes", "YES")

        def _i(name: str, default: str) -> int:
            return int(os.getenv(name, default).strip())

        return Settings(
            app_env=os.getenv("APP_ENV", "dev").strip(),
            db_path=os.getenv("DB_PATH", "./_local/data/linkvault.db").strip(),
            log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper(),
            provider_api_key=os.getenv("OPENAI_API_KEY", "").strip(),
            embedding_base_url=os.getenv("EMBEDDING_BASE_URL", "https://api.openai.com/v1").strip().rstrip("/"),
            embedding_model=os.getenv("EMBEDDING_MODEL", "text-embedding-3-large").strip(),
            embedding_dimensions=_i("EMBEDDING_DIMENSIONS", "3072"),
            fetch_timeout_ms=_i("FETCH_TIMEOUT_MS", "15000"),
            metadata_deadline_ms=_i("METADATA_DEADLINE_MS", "20000"),
            embedding_timeout_ms=_i("EMBEDDING_TIMEOUT_MS", "60000"),
            oembed_timeout_ms=_i("OEMBED_TIMEOUT_MS", "10000"),
            batch_size=_i("EMBEDDING_BATCH_SIZE", "100"),
            pipeline_timeout_ms=_i("PIPELINE_TIMEOUT_MS", "30000"),
            worker_concurrency=_i("WORKER_CONCURRENCY", "2"),
            enable_background_worker=_b("ENABLE_BACKGROUND_WORKER", "1"),
        )
