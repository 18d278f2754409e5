from __future__ import annotations

from collections.abc import Generator

import redis
from fastapi import Request

from quantum_salvation.assets.registry import Catalog
from quantum_salvation.config import Settings, load_settings
from quantum_salvation.infra.redis_client import create_redis


def get_redis() -> Generator[redis.Redis, None, None]:
    client = create_redis()
    try:
        yield client
    finally:
        client.close()


def get_catalog(request: Request) -> Catalog:
    return request.app.state.catalog


def get_settings(request: Request) -> Settings:
    settings = getattr(request.app.state, "settings", None)
    return settings if settings is not None else load_settings()
