"""Entrypoint for the release audit controller."""

from __future__ import annotations

import sys
import threading
from pathlib import Path

if __package__ in (None, ""):
    sys.path.insert(0, str(Path(__file__).resolve().parents[1]))  # pragma: no cover

from release_audit import __version__
from release_audit.app import get_app_context
from release_audit.logging_utils import configure_logging, get_logger


def run_entrypoint() -> None:
    """Start the audit workers and block serving the status endpoint."""
    configure_logging()
    logger = get_logger(__name__)
    ctx = get_app_context()
    settings = ctx.settings

    logger.info("Initializing release audit controller v%s", __version__)
    if settings.audit.cli_image:
        logger.info("Verification pinned to %s", settings.audit.cli_image)
    ctx.controller.start(settings.audit.workers)

    try:
        if settings.server.status_enabled:
            _run_http(ctx)
        else:
            threading.Event().wait()
    except KeyboardInterrupt:
        pass
    finally:
        ctx.controller.stop(timeout=settings.audit.upload_timeout_seconds)


def _run_http(ctx) -> None:
    from release_audit.transport.http_server import create_http_app

    try:
        import uvicorn
    except ImportError as exc:
        raise RuntimeError("uvicorn is required for the status endpoint") from exc

    uvicorn.run(
        create_http_app(ctx),
        host=ctx.settings.server.host,
        port=ctx.settings.server.port,
        log_config=None,
    )


if __name__ == "__main__":  # pragma: no cover
    run_entrypoint()
