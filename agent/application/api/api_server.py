from contextlib import asynccontextmanager
from typing import Optional
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import structlog

from application.api.route.agent import router as api_router
from application.websocket.connection_manager import ConnectionManager
from application.websocket.ws_server import router as ws_router
from domain.orchestration.core.runtime import AssistantRuntime
from infrastructure.config.settings import AssistantSettings
from infrastructure.observability.logging import setup_logging

logger = structlog.get_logger(__name__)


def create_app(runtime: Optional[AssistantRuntime] = None) -> FastAPI:
    """Build the HTTP/WebSocket surface around a runtime"""

    runtime = runtime or AssistantRuntime(AssistantSettings.from_env())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await runtime.startup()
        logger.info("Assistant server started", provider=runtime.gateway.active_type)
        yield
        await runtime.cancel()
        await runtime.sessions.save_current()
        logger.info("Assistant server shutdown")

    app = FastAPI(title="Assistant Agent Server", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.runtime = runtime
    app.state.connection_manager = ConnectionManager()
    app.include_router(api_router)
    app.include_router(ws_router)
    return app


if __name__ == "__main__":
    import uvicorn

    settings = AssistantSettings.from_env()
    setup_logging(settings.log_level, settings.log_format, settings.service_name)
    uvicorn.run(create_app(AssistantRuntime(settings)), host="0.0.0.0", port=8000)
