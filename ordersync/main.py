"""
FastAPI Application Entry Point

Order Sync Engine - read-only service over the synchronized order view.
Runs the polling loop for the lifetime of the application and exposes
the published snapshot to kitchen displays and other consumers.

Endpoints:
    - GET /: Service info
    - GET /health: Upstream, storage and sync health
    - GET /api/orders: Published orders (optional ?status= filter)
    - GET /api/orders/{order_id}: One published order
    - GET /api/modifiers: Modifier totals across published orders
    - GET /api/diagnostics: Recent sync events and the last error
    - GET /api/debug/diff: Normalized vs raw comparison (development/debug)
    - POST /api/refresh: Manual, non-silent refresh

Author: Khalil Bannouri
Version: 1.0.0
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Callable, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ordersync.core.config import get_settings, setup_logging
from ordersync.domain.debug_diff import compute_orders_debug_diff
from ordersync.domain.modifiers import derive_modifier_summary
from ordersync.domain.normalize import resolve_fulfillment_filter_key
from ordersync.schemas import (
    DebugDiffResponse,
    DiagnosticLevelEnum,
    DiagnosticsResponse,
    ErrorResponse,
    FulfillmentFilterEnum,
    HealthResponse,
    ModifierSummaryGroup,
    NormalizedOrder,
    OrdersListResponse,
    RefreshResponse,
)
from ordersync.services.diagnostics import STORAGE_UNAVAILABLE, DiagnosticsRecorder
from ordersync.services.orders_api import get_orders_api
from ordersync.services.storage import ResilientStore, get_key_value_store
from ordersync.sync.engine import SyncEngine

# Initialize configuration and logging
settings = get_settings()
setup_logging()
logger = logging.getLogger(__name__)


# =============================================================================
# ENGINE WIRING
# =============================================================================

def build_engine() -> SyncEngine:
    """Assemble the engine from the configured upstream and store."""
    diagnostics = DiagnosticsRecorder(settings.diagnostics_max_events)
    store = get_key_value_store()

    if isinstance(store, ResilientStore):
        store.on_unavailable = lambda operation, key, error: diagnostics.record(
            STORAGE_UNAVAILABLE,
            DiagnosticLevelEnum.WARN,
            payload={"operation": operation, "key": key},
            error=error,
        )

    return SyncEngine(get_orders_api(), store, diagnostics, settings=settings)


def get_engine(request: Request) -> SyncEngine:
    return request.app.state.engine


# =============================================================================
# APPLICATION LIFECYCLE
# =============================================================================

def create_app(
    engine_factory: Callable[[], SyncEngine] = build_engine,
    polling_enabled: Optional[bool] = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        engine_factory: Returns the SyncEngine the app owns
        polling_enabled: Override of POLLING_ENABLED (tests disable it)
    """
    start_polling = settings.polling_enabled if polling_enabled is None else polling_enabled

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Manage application startup and shutdown events.
        """
        logger.info("=" * 60)
        logger.info(f"🚀 Starting {settings.app_name}")
        logger.info(f"   Version: {settings.app_version}")
        logger.info(f"   Environment: {settings.env_mode.value}")
        logger.info(f"   Debug: {settings.debug}")
        logger.info("=" * 60)

        if settings.use_real_services:
            missing = settings.validate_production_config()
            if missing:
                logger.warning(f"⚠️ Missing production config: {missing}")

        engine = engine_factory()
        app.state.engine = engine
        logger.info(f"✅ Orders API: {engine.api.provider_name}")
        logger.info(f"✅ Storage: {engine.store.provider_name}")

        restored = await engine.bootstrap()
        logger.info(f"✅ Restored {restored} cached orders")

        if start_polling:
            engine.start()
            logger.info("✅ Polling started")

        logger.info("=" * 60)
        logger.info("✅ Application ready!")
        logger.info("=" * 60)

        yield

        logger.info("Shutting down...")
        await engine.stop()
        await engine.api.aclose()
        await engine.store.aclose()
        logger.info("✅ Cleanup complete")

    app = FastAPI(
        title=settings.app_name,
        description=(
            "Keeps a fresh, stable view of in-flight restaurant orders "
            "synchronized from an upstream order-management API."
        ),
        version=settings.app_version,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    _register_routes(app)
    return app


# =============================================================================
# ROUTES
# =============================================================================

def _register_routes(app: FastAPI) -> None:

    @app.get("/", tags=["Root"])
    async def root() -> dict[str, str]:
        """API root with navigation links."""
        return {
            "message": f"Welcome to {settings.app_name}",
            "version": settings.app_version,
            "environment": settings.env_mode.value,
            "documentation": "/docs",
            "orders": "/api/orders",
            "health": "/health",
        }

    @app.get(
        "/health",
        response_model=HealthResponse,
        tags=["Health"],
        summary="System Health Check",
    )
    async def health_check(engine: SyncEngine = Depends(get_engine)) -> HealthResponse:
        """Verify the upstream, the store and the sync loop."""
        upstream_status = "healthy" if await engine.api.health_check() else "unhealthy"

        storage_status = "healthy" if await engine.store.health_check() else "unhealthy"
        if isinstance(engine.store, ResilientStore) and engine.store.degraded:
            storage_status = f"degraded: {engine.store.last_error}"

        if engine.state.error:
            sync_status = f"error: {engine.state.error}"
        elif engine.state.is_refreshing:
            sync_status = "refreshing"
        elif engine.is_polling:
            sync_status = "polling"
        else:
            sync_status = "idle"

        overall = "operational" if (
            upstream_status == "healthy"
            and storage_status == "healthy"
            and not engine.state.error
        ) else "degraded"

        return HealthResponse(
            status=overall,
            upstream=upstream_status,
            storage=storage_status,
            sync=sync_status,
            orders_cached=len(engine.cache),
            lookup_version=engine.registry.version,
            last_success_at=engine.state.last_success_at,
            timestamp=datetime.now(timezone.utc),
        )

    @app.get(
        "/api/orders",
        response_model=OrdersListResponse,
        tags=["Orders"],
        summary="Published Orders",
    )
    async def list_orders(
        status: Optional[FulfillmentFilterEnum] = Query(
            None, description="Only orders in this fulfillment bucket"
        ),
        engine: SyncEngine = Depends(get_engine),
    ) -> OrdersListResponse:
        snapshot = engine.snapshot()
        if status is None:
            return snapshot

        orders = [
            order for order in snapshot.orders
            if resolve_fulfillment_filter_key(order) == status
        ]
        return snapshot.model_copy(update={"orders": orders, "count": len(orders)})

    @app.get(
        "/api/orders/{order_id}",
        response_model=NormalizedOrder,
        responses={404: {"model": ErrorResponse}},
        tags=["Orders"],
        summary="Get Order",
    )
    async def get_order(
        order_id: str,
        engine: SyncEngine = Depends(get_engine),
    ) -> NormalizedOrder:
        for order in engine.orders:
            if order.id == order_id or order.guid == order_id:
                return order
        raise HTTPException(status_code=404, detail=f"Order {order_id} not found")

    @app.get(
        "/api/modifiers",
        response_model=list[ModifierSummaryGroup],
        tags=["Orders"],
        summary="Modifier Totals",
    )
    async def modifier_summary(
        status: Optional[FulfillmentFilterEnum] = Query(None),
        engine: SyncEngine = Depends(get_engine),
    ) -> list[ModifierSummaryGroup]:
        orders = engine.orders
        if status is not None:
            orders = [order for order in orders if resolve_fulfillment_filter_key(order) == status]
        return derive_modifier_summary(orders)

    @app.get(
        "/api/diagnostics",
        response_model=DiagnosticsResponse,
        tags=["Diagnostics"],
        summary="Sync Event Timeline",
    )
    async def diagnostics(
        limit: int = Query(50, ge=1, le=1000),
        event_type: Optional[str] = Query(None, alias="type"),
        engine: SyncEngine = Depends(get_engine),
    ) -> DiagnosticsResponse:
        events = engine.diagnostics.events(event_type)[-limit:]
        last_error = engine.diagnostics.last_error
        return DiagnosticsResponse(
            events=[event.to_schema() for event in events],
            last_error=last_error.to_schema() if last_error else None,
        )

    @app.get(
        "/api/debug/diff",
        response_model=DebugDiffResponse,
        responses={403: {"model": ErrorResponse}},
        tags=["Diagnostics"],
        summary="Normalized vs Raw Diff (Development)",
    )
    async def debug_diff(engine: SyncEngine = Depends(get_engine)) -> DebugDiffResponse:
        if not (settings.is_development or settings.debug):
            raise HTTPException(
                status_code=403,
                detail="Debug diff only available in development or debug mode",
            )
        return compute_orders_debug_diff(engine.orders, engine.cache.raw_orders())

    @app.post(
        "/api/refresh",
        response_model=RefreshResponse,
        tags=["Orders"],
        summary="Manual Refresh",
    )
    async def refresh(engine: SyncEngine = Depends(get_engine)) -> RefreshResponse:
        """Run a non-silent refresh cycle and report its outcome."""
        report = await engine.refresh(silent=False)
        return RefreshResponse(
            success=report.success,
            cancelled=report.cancelled,
            message=report.message,
            orders_count=len(engine.orders),
            lookup_version=engine.registry.version,
            cursor=engine.cursor,
            duration_ms=report.duration_ms,
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Catch-all exception handler."""
        logger.exception(f"Unhandled exception: {exc}")

        return JSONResponse(
            status_code=500,
            content={
                "success": False,
                "error": "Internal Server Error",
                "detail": str(exc) if settings.debug else "An unexpected error occurred",
            },
        )


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "ordersync.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.is_development,
    )
