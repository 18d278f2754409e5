from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from quantum_salvation.lock import DEFAULT_LOCK_TTL_MS

DEFAULT_REDIS_URL = "redis://localhost:6379/0"


@dataclass(frozen=True, slots=True)
class Settings:
    redis_url: str = DEFAULT_REDIS_URL
    log_level: str = "INFO"
    catalog_dir: Path | None = None
    lock_ttl_ms: int = DEFAULT_LOCK_TTL_MS


def load_settings() -> Settings:
    catalog_dir = os.environ.get("QS_CATALOG_DIR", "").strip()
    return Settings(
        redis_url=os.environ.get("REDIS_URL", DEFAULT_REDIS_URL),
        log_level=os.environ.get("QS_LOG_LEVEL", "INFO").upper(),
        catalog_dir=Path(catalog_dir) if catalog_dir else None,
        lock_ttl_ms=int(os.environ.get("QS_LOCK_TTL_MS", DEFAULT_LOCK_TTL_MS)),
    )
