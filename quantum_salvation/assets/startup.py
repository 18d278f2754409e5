from __future__ import annotations

from fastapi import FastAPI

from quantum_salvation.assets.registry import load_catalog
from quantum_salvation.config import Settings


def init_catalog_for_app(app: FastAPI, settings: Settings) -> None:
    # Bundled content lives in quantum_salvation/assets/data unless QS_CATALOG_DIR points elsewhere.
    app.state.catalog = load_catalog(root=settings.catalog_dir)
    app.state.settings = settings
