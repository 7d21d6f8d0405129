from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import structlog

from dynamics_agent.application.api.route.chat import router as chat_router
from dynamics_agent.application.chat_service import ChatService
from dynamics_agent.infrastructure.config import Settings, get_settings
from dynamics_agent.infrastructure.crm.dynamics_client import DynamicsClient
from dynamics_agent.infrastructure.llm.anthropic_client import ModelClient
from dynamics_agent.infrastructure.observability.logging import metrics, setup_logging
from dynamics_agent.infrastructure.persistence.access_store import StaticAccessStore
from dynamics_agent.infrastructure.persistence.audit_log import AuditLogger
from dynamics_agent.infrastructure.persistence.export_writer import CsvExportWriter

logger = structlog.get_logger(__name__)


def build_chat_service(settings: Settings) -> ChatService:
    """Wire the default collaborators"""

    return ChatService(
        model_client=ModelClient(settings),
        crm=DynamicsClient(settings),
        access_store=StaticAccessStore.from_settings(settings),
        audit=AuditLogger(),
        export_writer=CsvExportWriter(settings.export_dir),
        settings=settings
    )


def create_app(settings: Optional[Settings] = None, chat_service: Optional[ChatService] = None) -> FastAPI:
    settings = settings or get_settings()
    setup_logging(log_level=settings.log_level, log_format=settings.log_format)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        service = chat_service or build_chat_service(settings)
        app.state.chat_service = service
        logger.info("Dynamics Explorer started", environment=settings.environment, model=settings.model)
        yield
        await service.audit.drain()
        if chat_service is None:
            await service.model_client.aclose()
            await service.crm.aclose()
        logger.info("Dynamics Explorer shutdown")

    app = FastAPI(title="Dynamics Explorer", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(chat_router)

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "environment": settings.environment,
            "metrics": metrics.get_metrics_summary(),
            "timestamp": datetime.now(timezone.utc).isoformat()
        }

    return app


def main():
    import uvicorn
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)


if __name__ == "__main__":
    main()
