"""Read-only HTTP status surface for tracked release audits."""

from __future__ import annotations

import logging

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

from release_audit.app import AppContext

logger = logging.getLogger(__name__)


def create_http_app(ctx: AppContext) -> Starlette:
    """Create the status application bound to one application context."""
    tracker = ctx.tracker
    controller = ctx.controller

    async def health_handler(request: Request) -> Response:
        return JSONResponse({"status": "ok"})

    async def ready_handler(request: Request) -> Response:
        if not controller.running:
            return JSONResponse({"status": "not_ready"}, status_code=503)
        return JSONResponse({"status": "ready"})

    async def list_records_handler(request: Request) -> Response:
        records = tracker.records()
        failed_only = request.query_params.get("failed", "").lower() in {"1", "true", "yes"}
        if failed_only:
            records = [record for record in records if record.failure is not None]
        return JSONResponse(
            {
                "count": len(records),
                "records": [record.to_dict() for record in records],
            }
        )

    async def get_record_handler(request: Request) -> Response:
        name = request.path_params["name"]
        record = tracker.get(name)
        if record is None:
            return JSONResponse(
                {"error": "not_found", "message": f"Release tag {name} is not tracked"},
                status_code=404,
            )
        return JSONResponse(record.to_dict())

    routes = [
        Route("/health", endpoint=health_handler, methods=["GET"]),
        Route("/ready", endpoint=ready_handler, methods=["GET"]),
        Route("/audit/records", endpoint=list_records_handler, methods=["GET"]),
        Route("/audit/records/{name}", endpoint=get_record_handler, methods=["GET"]),
    ]
    return Starlette(routes=routes)
