import logging

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from scandaemon import __version__
from scandaemon.api.middleware.logging import RequestLoggingMiddleware
from scandaemon.api.routes.events import router as events_router
from scandaemon.api.routes.scans import router as scans_router
from scandaemon.config import get_settings
from scandaemon.daemon import ScanDaemon

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Scan Daemon API",
    description="Tiered multi-engine file scanning",
    version=__version__,
    docs_url="/v1/docs",
    openapi_url="/v1/openapi.json",
)

app.add_middleware(RequestLoggingMiddleware)

app.include_router(scans_router)
app.include_router(events_router)

# Daemon stored on app state so routes and tests can reach it. A daemon set
# before startup (e.g. by tests or the CLI) is used as-is.
app.state.daemon = None
app.state.run_workers = True


@app.get("/healthz", tags=["health"])
async def health_check() -> JSONResponse:
    return JSONResponse({"status": "ok", "daemon": app.state.daemon is not None})


@app.on_event("startup")
async def startup_event() -> None:
    logger.info("Scan daemon API starting up")
    if app.state.daemon is None:
        app.state.daemon = ScanDaemon.from_settings(get_settings())
    await app.state.daemon.start(workers=app.state.run_workers)


@app.on_event("shutdown")
async def shutdown_event() -> None:
    if app.state.daemon is not None:
        await app.state.daemon.shutdown()
        app.state.daemon = None
    logger.info("Scan daemon API shutting down")
