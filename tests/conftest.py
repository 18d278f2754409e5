from __future__ import annotations

import os
from collections.abc import Generator
from pathlib import Path

import pytest

from quantum_salvation.assets.registry import Catalog, load_catalog
from quantum_salvation.cinematics import CinematicSequencer
from quantum_salvation.core.clock import Scheduler
from quantum_salvation.missions import MissionTracker
from quantum_salvation.story_engine import StoryEngine


@pytest.fixture(scope="session", autouse=True)
def _load_dotenv_for_tests() -> None:
    """Load repo .env for local runs (PyCharm/CLI).

    In CI, we don't auto-load `.env` by default so tests stay hermetic unless
    explicitly opted-in with QS_LOAD_DOTENV_FOR_TESTS=1.
    """

    if os.environ.get("CI") and os.environ.get("QS_LOAD_DOTENV_FOR_TESTS") != "1":
        return

    env_path = Path(__file__).resolve().parents[1] / ".env"
    if env_path.exists():
        from dotenv import load_dotenv

        load_dotenv(dotenv_path=env_path, override=False)


@pytest.fixture(scope="session")
def catalog() -> Catalog:
    return load_catalog()


@pytest.fixture()
def scheduler() -> Scheduler:
    return Scheduler()


@pytest.fixture()
def engine() -> StoryEngine:
    return StoryEngine()


@pytest.fixture()
def tracker(engine: StoryEngine, catalog: Catalog, scheduler: Scheduler) -> Generator[MissionTracker, None, None]:
    t = MissionTracker(engine=engine, catalog=catalog, scheduler=scheduler)
    yield t
    t.dispose()


@pytest.fixture()
def sequencer(engine: StoryEngine, catalog: Catalog, scheduler: Scheduler) -> Generator[CinematicSequencer, None, None]:
    s = CinematicSequencer(engine=engine, catalog=catalog, scheduler=scheduler)
    yield s
    s.dispose()


@pytest.fixture()
def client_and_redis():
    """Shared fixture for tests that need both a FastAPI TestClient and fakeredis."""

    import fakeredis
    from fastapi.testclient import TestClient

    from quantum_salvation.api.deps import get_redis
    from quantum_salvation.main import app

    r = fakeredis.FakeRedis(decode_responses=True)

    def _override() -> Generator[fakeredis.FakeRedis, None, None]:
        yield r

    app.dependency_overrides[get_redis] = _override
    with TestClient(app) as c:
        yield c, r
    app.dependency_overrides.clear()
