from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import AsyncIterator, Optional

from fastapi import FastAPI, Request
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST

from tailpoint.config import Settings
from tailpoint.follower import Follower
from tailpoint.logformat import FormatPlan
from tailpoint.metrics import MetricRegistry
from tailpoint.pipeline import consume_lines

logger = logging.getLogger(__name__)


def create_app(
    settings: Settings,
    metrics: MetricRegistry,
    plan: FormatPlan,
    follower: Optional[Follower] = None,
) -> FastAPI:
    """Build the scrape app.

    When a follower is given, the line consumer runs as a background task for
    the lifetime of the app.
    """

    @contextlib.asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        task = None
        if follower is not None:
            task = asyncio.create_task(consume_lines(follower, plan, metrics))
        app.state.consumer = task
        try:
            yield
        finally:
            if task is not None:
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task

    app = FastAPI(title="tailpoint", lifespan=lifespan, docs_url=None, redoc_url=None, openapi_url=None)
    app.state.settings = settings
    app.state.metrics = metrics

    # ----------------------------
    # Routes
    # ----------------------------
    def scrape(request: Request) -> Response:
        return Response(content=request.app.state.metrics.exposition(), media_type=CONTENT_TYPE_LATEST)

    app.add_api_route(settings.telemetry_path, scrape, methods=["GET"], include_in_schema=False)
    return app
