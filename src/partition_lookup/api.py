"""
HTTP front-end (FastAPI).

Endpoints
---------
GET|POST /init?rows=<int>
    Create keyspace/table if missing and seed rows x 2 rows. A failure here
    is fatal: the response is an error envelope (500) and the process is
    asked to shut down.

GET /search?ids=<int>,<int>,...
    Lookup of the demo partition by a set of secondary ids. Without ``ids``
    ten random ids in [0, 1000) are used.

GET /find/{id}
    Exact composite-key lookup; non-numeric ids fall back to 0.

GET /health, GET /metrics
    Coordinator round trip and Prometheus text metrics.

Lookup errors are returned as ``{"type": "error", "message": ...}`` with
status 200; they never take the process down.
"""

import logging
import os
import signal
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncContextManager, Callable, Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from starlette.background import BackgroundTask

from partition_lookup.config import ServiceConfig
from partition_lookup.errors import StoreQueryError, StoreSchemaError
from partition_lookup.logging_utils import new_request_id
from partition_lookup.models import Envelope, HealthStatus
from partition_lookup.observability import QueryMetrics, Tracer
from partition_lookup.queries import PartitionQueryEngine, parse_id_list
from partition_lookup.schema import initialize, parse_row_count
from partition_lookup.store import PartitionStore

logger = logging.getLogger(__name__)

StoreFactory = Callable[[ServiceConfig], AsyncContextManager[PartitionStore]]
FatalHandler = Callable[[BaseException], None]


def terminate_process(error: BaseException) -> None:
    """Ask the server to stop; uvicorn shuts down and the lifespan releases the session."""
    logger.critical(f"Terminating after fatal error: {error}")
    os.kill(os.getpid(), signal.SIGTERM)


# -------------------------- Dependencies --------------------------

def get_store(request: Request) -> PartitionStore:
    return request.app.state.store


def get_engine(request: Request) -> PartitionQueryEngine:
    return request.app.state.engine


def get_metrics(request: Request) -> QueryMetrics:
    return request.app.state.metrics


# -------------------------- App factory --------------------------

def create_app(
    config: Optional[ServiceConfig] = None,
    *,
    store_factory: Optional[StoreFactory] = None,
    fatal_handler: Optional[FatalHandler] = None,
    rng: Any = None,
) -> FastAPI:
    """
    Build the application.

    Args:
        config: Service configuration (defaults for every field if omitted)
        store_factory: Async context manager factory yielding a connected
            store; ``PartitionStore.from_config`` by default
        fatal_handler: Called after the response of a failed /init is sent;
            sends SIGTERM to this process by default
        rng: Random source shared by seeding and placeholder search keys
    """
    config = config or ServiceConfig()
    store_factory = store_factory or PartitionStore.from_config
    metrics = QueryMetrics()
    tracer = Tracer(enabled=config.otel_tracing)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting...")
        async with store_factory(config) as store:
            app.state.store = store
            app.state.engine = PartitionQueryEngine(
                store,
                metrics=metrics,
                tracer=tracer,
                rng=rng,
                deadline=config.request_deadline,
            )
            logger.info(f"Serving on {config.http_host}:{config.http_port}")
            yield
        logger.info("Stopped")

    app = FastAPI(title="partition-lookup", lifespan=lifespan)
    app.state.config = config
    app.state.metrics = metrics
    app.state.fatal_handler = fatal_handler or terminate_process

    @app.middleware("http")
    async def bind_request_id(request: Request, call_next):
        request_id = new_request_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response

    @app.api_route("/init", methods=["GET", "POST"])
    async def init_data(
        request: Request,
        rows: Optional[str] = Query(None),
        store: PartitionStore = Depends(get_store),
    ) -> JSONResponse:
        logger.info("Called init_data", extra={"params": dict(request.query_params)})
        count = parse_row_count(rows)
        start = time.perf_counter()
        try:
            written = await initialize(store, count, rng=rng)
        except StoreSchemaError as e:
            metrics.record_query(
                "seed",
                (time.perf_counter() - start) * 1000,
                success=False,
                error_type=type(e.original_error or e).__name__,
            )
            logger.critical("Initialization failed", exc_info=e)
            return JSONResponse(
                Envelope.error(str(e)).render(),
                status_code=500,
                background=BackgroundTask(request.app.state.fatal_handler, e),
            )
        metrics.record_query("seed", (time.perf_counter() - start) * 1000, rows=written)
        return JSONResponse(Envelope.success([]).render())

    @app.get("/search")
    async def search(
        request: Request,
        ids: Optional[str] = Query(None, description="Comma-separated numeric ids"),
        engine: PartitionQueryEngine = Depends(get_engine),
    ) -> JSONResponse:
        logger.info("Called search", extra={"params": dict(request.query_params)})
        try:
            keys = parse_id_list(ids) if ids is not None else None
        except ValueError as e:
            return JSONResponse(Envelope.error(str(e)).render())

        try:
            records = await engine.search(keys)
        except StoreQueryError as e:
            return JSONResponse(Envelope.error(str(e)).render())
        return JSONResponse(Envelope.success(records).render())

    @app.get("/find/{id}")
    async def find_by_id(
        request: Request,
        id: str,
        engine: PartitionQueryEngine = Depends(get_engine),
    ) -> JSONResponse:
        logger.info("Called find_by_id", extra={"path_id": id, "params": dict(request.query_params)})
        try:
            records = await engine.find_by_id(id)
        except StoreQueryError as e:
            return JSONResponse(Envelope.error(str(e)).render())
        return JSONResponse(Envelope.success(records).render())

    @app.get("/health")
    async def health(store: PartitionStore = Depends(get_store)) -> JSONResponse:
        status = HealthStatus(**await store.health_check())
        return JSONResponse(
            status.model_dump(exclude_none=True),
            status_code=200 if status.status == "healthy" else 503,
        )

    @app.get("/metrics")
    async def export_metrics(metrics: QueryMetrics = Depends(get_metrics)) -> PlainTextResponse:
        return PlainTextResponse(metrics.export_prometheus(), media_type="text/plain; version=0.0.4")

    return app
