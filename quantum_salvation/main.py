import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI

from quantum_salvation.api.routes import router
from quantum_salvation.assets.startup import init_catalog_for_app
from quantum_salvation.config import load_settings

# Repo-root .env for local runs; real environment variables win.
load_dotenv(dotenv_path=Path(__file__).resolve().parents[1] / ".env", override=False)

settings = load_settings()

# Configure logging
logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
    init_catalog_for_app(app, load_settings())
    logger.info("quantum-salvation ready")
    yield


app = FastAPI(title="quantum-salvation", version="0.1.0", lifespan=_lifespan)
app.include_router(router)


@app.get("/info")
async def info() -> dict[str, str]:
    return {"name": "quantum-salvation", "version": "0.1.0"}
