"""
VaultIndex - DocuVault / DID Event Indexer

Serves read-only queries over the materialized snapshot and, when
VAULTINDEX_SCHEDULER_ENABLED is set, runs ingestion in the background.
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from vaultindex import __version__
from vaultindex.api import router as index_router
from vaultindex.config import IndexerConfig
from vaultindex.core.queries import IndexQueries
from vaultindex.core.scheduler import IndexerScheduler, create_indexer
from vaultindex.db.store import EntityStore
from vaultindex.core.source import EventSource
from vaultindex.observability import (
    setup_logging,
    get_logger,
    RequestContextMiddleware,
    check_health,
    get_metrics,
)

setup_logging()
logger = get_logger(__name__)


def create_app(
    config: Optional[IndexerConfig] = None,
    store: Optional[EntityStore] = None,
    source: Optional[EventSource] = None,
) -> FastAPI:
    """Build the API around an indexer (from the environment unless given)."""
    scheduler = create_indexer(config=config, store=store, source=source)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        scheduler: IndexerScheduler = app.state.scheduler
        store = scheduler.controller.store

        checkpoint = store.get_checkpoint()
        logger.info(
            "Indexer API starting",
            store_type=type(store).__name__,
            checkpoint_sequence=checkpoint.sequence,
            scanned_block=checkpoint.scanned_block,
            scheduler_enabled=scheduler.controller.config.scheduler_enabled,
        )
        scheduler.start()  # no-op unless scheduler_enabled

        yield

        scheduler.stop()
        scheduler.controller.close()
        logger.info("Indexer API stopped")

    app = FastAPI(
        title="VaultIndex",
        description="""
## DocuVault / DID Event Indexer

Materialized, reorg-safe view of the DocuVault and DID contract events.

### Guarantees

- **Ordered**: events apply in (block, log index) order, exactly once
- **Atomic**: entity writes and the cursor advance commit together
- **Reorg-safe**: retracted blocks are undone from the journal, then replayed

### Queries

Every response under `/api/index` includes the committed snapshot height,
so callers can see how far behind the chain the answer is.

### Storage Backends

- **InMemoryEntityStore**: Development/testing (default)
- **PostgresEntityStore**: Production, set `DATABASE_URL` or `DATABASE_HOST`
        """,
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    app.state.scheduler = scheduler
    app.state.store = scheduler.controller.store
    app.state.source = scheduler.controller.source
    app.state.queries = IndexQueries(scheduler.controller.store)

    app.add_middleware(RequestContextMiddleware)
    app.include_router(index_router)

    @app.get("/health", tags=["System"])
    async def health():
        """Liveness only; /health/detailed checks the store and the chain."""
        return {"status": "healthy", "service": "vaultindex"}

    @app.get("/health/detailed", tags=["System"])
    async def health_detailed(request: Request, verify: bool = False):
        """
        Store head, chain head and lag, scheduler state, and with
        ?verify=true a full journal replay against the snapshot.

        503 when any check fails or ingestion stopped on a fatal error.
        """
        report = check_health(
            store=request.app.state.store,
            source=request.app.state.source,
            verify_integrity=verify,
        )
        scheduler = request.app.state.scheduler
        if scheduler.fatal_error is not None:
            report.healthy = False
            report.checks["scheduler"] = {
                "status": "unhealthy",
                "error": str(scheduler.fatal_error),
            }

        return JSONResponse(
            status_code=200 if report.healthy else 503,
            content={
                "status": "healthy" if report.healthy else "unhealthy",
                "checks": report.checks,
                "duration_ms": report.duration_ms,
            },
        )

    @app.get("/metrics", tags=["System"])
    async def metrics():
        """Ingestion and request counters, block lag and latency percentiles."""
        return get_metrics().get_summary()

    return app


app = create_app()
