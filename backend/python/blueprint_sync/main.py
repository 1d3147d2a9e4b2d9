from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import uvicorn
from fastapi import FastAPI
from fastapi.responses import JSONResponse

from blueprint_sync.api.routes.reconciliation import router as reconciliation_router
from blueprint_sync.config.constants.http_status_code import HttpStatusCode
from blueprint_sync.config.providers.redis.redis_store import RedisDistributedKeyValueStore
from blueprint_sync.containers.container import ReconciliationContainer
from blueprint_sync.utils.time_conversion import get_epoch_timestamp_in_ms

SHUTDOWN_DRAIN_SECONDS = 10.0


def create_app(app_container: Optional[ReconciliationContainer] = None) -> FastAPI:
    """Build the FastAPI app around a container; a fresh one is initialised when none is given."""
    app_container = app_container or ReconciliationContainer.init("blueprint_sync")

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Lifespan context manager for FastAPI"""
        app.container = app_container
        logger = app_container.logger()
        logger.info("🚀 Starting application")

        store = app_container.store()
        if isinstance(store, RedisDistributedKeyValueStore):
            if not await store.wait_for_connection():
                logger.error("❌ Redis is not reachable")
                raise ConnectionError("Redis is not reachable")

        yield
        # Shutdown
        logger.info("🔄 Shutting down application")
        task_manager = app_container.task_manager()
        try:
            await task_manager.drain(timeout=SHUTDOWN_DRAIN_SECONDS)
            await task_manager.cancel_all()
        except Exception as e:
            logger.error(f"❌ Error stopping background tasks: {str(e)}")

        try:
            await store.close()
        except Exception as e:
            logger.error(f"❌ Error closing key-value store: {e}")

    app = FastAPI(
        lifespan=lifespan,
        title="Blueprint Sync API",
        description="Reconciliation of Source and Embed records against live Confluence pages",
        version="1.0.0",
    )
    app.include_router(reconciliation_router)

    @app.get("/health")
    async def health_check() -> JSONResponse:
        """Health check endpoint that also verifies the key-value store"""
        try:
            healthy = await app.container.store().health_check()
        except Exception as e:
            return JSONResponse(
                status_code=HttpStatusCode.INTERNAL_SERVER_ERROR.value,
                content={"status": "fail", "error": str(e), "timestamp": get_epoch_timestamp_in_ms()},
            )
        if not healthy:
            return JSONResponse(
                status_code=HttpStatusCode.SERVICE_UNAVAILABLE.value,
                content={
                    "status": "fail",
                    "error": "Key-value store unhealthy",
                    "timestamp": get_epoch_timestamp_in_ms(),
                },
            )
        return JSONResponse(
            status_code=HttpStatusCode.OK.value,
            content={"status": "healthy", "timestamp": get_epoch_timestamp_in_ms()},
        )

    return app


app = create_app()


def run(host: str = "0.0.0.0", port: int = 8093, reload: bool = False) -> None:
    """Run the application"""
    uvicorn.run(
        "blueprint_sync.main:app", host=host, port=port, log_level="info", reload=reload
    )


if __name__ == "__main__":
    run()
