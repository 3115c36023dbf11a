"""Uvicorn server runner for the submission-resilience admin API."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from submission_resilience.config import Settings


def run_server(settings: Settings) -> None:
    """Run uvicorn with settings-backed host/port values."""
    import uvicorn

    from submission_resilience.api.app import create_app

    app = create_app(settings)
    uvicorn.run(
        app,
        host=settings.api.host,
        port=settings.api.port,
        log_level=settings.logging.level.lower(),
    )
