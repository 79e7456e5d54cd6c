"""Helpers to launch the local JSON API."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import uvicorn

from .config import load_settings
from .paths import get_log_path, get_settings_path
from .service import ScreenTimeService
from .webapp import create_app


def run_server(
    *,
    host: str = "127.0.0.1",
    port: int = 8765,
    settings_path: Optional[Path] = None,
    log_level: str = "info",
) -> None:
    """Start the FastAPI app with the backup schedule armed."""
    settings_path = settings_path or get_settings_path()
    service = ScreenTimeService(
        settings=load_settings(settings_path), settings_path=settings_path
    )
    app = create_app(service)

    file_handler = logging.FileHandler(get_log_path(), encoding="utf-8")
    file_handler.setFormatter(
        logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s")
    )
    logging.getLogger().addHandler(file_handler)

    logging.getLogger("uvicorn.error").setLevel(log_level.upper())
    uvicorn.run(app, host=host, port=port, log_level=log_level)
