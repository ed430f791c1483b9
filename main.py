import uvicorn
import time
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from starlette.middleware.base import BaseHTTPMiddleware

from cicd_engine.agents.orchestrator import Orchestrator
from cicd_engine.api.runs import router as runs_router
from cicd_engine.api.status import router as status_router
from cicd_engine.api.webhook import router as webhook_router
from cicd_engine.core.config import load_engine_config
from cicd_engine.utils.logging_config import setup_logging

# Initialize enhanced logging
setup_logging()
logger = logging.getLogger("main")


# ---------------------------------------------------------------------------
# Logging Middleware
# ---------------------------------------------------------------------------
class LoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        start_time = time.time()
        client_host = request.client.host if request.client else "unknown"
        logger.info("Incoming: %s %s from %s", request.method, request.url.path, client_host)

        try:
            response = await call_next(request)
            process_time = (time.time() - start_time) * 1000
            logger.info(
                "Outgoing: %s %s - Status: %d - Time: %.2fms",
                request.method, request.url.path, response.status_code, process_time,
            )
            return response
        except Exception as e:
            logger.error("Request failed: %s %s - Error: %s", request.method, request.url.path, e)
            raise


def create_app(orchestrator: Optional[Orchestrator] = None) -> FastAPI:
    """
    Build the API. Without an orchestrator the lifespan loads the pipeline
    config and starts one; a provided orchestrator is used as-is.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        engine = orchestrator
        if engine is None:
            engine = Orchestrator(load_engine_config(), load_archive=True)
        app.state.orchestrator = engine
        logger.info("Engine started | capacity=%d | debounce=%.1fs | targets=%d",
                    engine.config.agent_pool_capacity, engine.config.debounce_window_seconds,
                    len(engine.config.deployment_targets))
        try:
            yield
        finally:
            await engine.shutdown()

    app = FastAPI(title="CI/CD Orchestration Engine", lifespan=lifespan)
    app.add_middleware(LoggingMiddleware)

    # Health endpoint
    @app.get("/health")
    async def health_check():
        return {"status": "ok"}

    # Register routers
    app.include_router(webhook_router)
    app.include_router(status_router)
    app.include_router(runs_router)
    return app


app = create_app()

if __name__ == "__main__":
    uvicorn.run("main:app", host="0.0.0.0", port=8000)
