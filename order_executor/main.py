import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from .adapters.entry.http.order_router import router as order_router
from .config import get_settings
from .workers.order_supervisor import OrderSupervisor


def _setup_logging():
    """
    Configure basic logging.
    """
    log_level = get_settings().LOG_LEVEL.upper()
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


supervisor = OrderSupervisor()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context for startup/shutdown lifecycle.
    """
    _setup_logging()
    logging.getLogger(__name__).info("Starting api-order-executor (lifespan startup)...")
    await supervisor.start()

    app.state.db = supervisor.db
    app.state.supervisor = supervisor

    app.include_router(order_router)

    try:
        yield
    finally:
        logging.getLogger(__name__).info("Shutting down api-order-executor (lifespan shutdown)...")
        await supervisor.stop()


app = FastAPI(title="api-order-executor", version="0.1.0", lifespan=lifespan)


@app.get("/healthz")
async def healthz():
    """
    Liveness probe endpoint.
    """
    return {"status": "ok"}
