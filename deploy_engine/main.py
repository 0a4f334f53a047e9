"""
Deployment Orchestration Engine - FastAPI Application.

This is the entry point for the engine API.
It provides endpoints for:
- Creating deployments and moving them through their stages
- Checking and recording completion gate steps
- Generating and executing deployment plans
- Approving sensitive steps (IaC apply)
- Running commands and streaming their output
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from deploy_engine.api.routes import router as deployments_router
from deploy_engine.config import get_settings
from deploy_engine.db.session import close_db, get_session_factory, init_db
from deploy_engine.engine import DeploymentOrchestrator
from deploy_engine.utils.logging import configure_logging, get_logger

logger = get_logger(__name__)

VERSION = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager.
    """
    settings = get_settings()
    configure_logging(settings.log_level)
    logger.info("Starting Deployment Orchestration Engine on port %s", settings.server_port)
    logger.info("Workspace root: %s", settings.workspace_path)
    logger.info("IaC: %s (dir %s)", settings.iac_binary, settings.iac_dir)

    # Initialize database connection
    await init_db(create=settings.auto_create_tables)

    orchestrator = DeploymentOrchestrator(settings, get_session_factory())
    app.state.orchestrator = orchestrator

    yield  # Application runs here

    # Shutdown
    logger.info("Shutting down Deployment Orchestration Engine...")
    await orchestrator.close()
    await close_db()


def create_app() -> FastAPI:
    app = FastAPI(
        title="Deployment Orchestration Engine",
        description="""
        Drives deployments from repository analysis to running infrastructure.

        ## Key Features
        - **Stage state machine**: Only legal transitions, full status history
        - **Completion gate**: Stages advance only when their work is verifiably done
        - **Deterministic plans**: The same analysis always yields the same steps
        - **Streaming commands**: Live output, bounded timeouts, audit log
        - **Human approval**: Required for infrastructure apply
        """,
        version=VERSION,
        lifespan=lifespan,
    )

    # CORS middleware - allow all origins for development
    # In production, restrict to specific origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(deployments_router)

    @app.get("/health")
    async def health_check():
        """
        Health check endpoint.

        Used by container orchestrators and load balancers.
        """
        settings = get_settings()
        return {
            "status": "healthy",
            "service": "deploy-engine",
            "version": VERSION,
            "workspace_root": str(settings.workspace_path),
            "verification": "http" if settings.verification_url else "artifacts",
        }

    @app.get("/")
    async def root():
        """
        Root endpoint with API information.
        """
        return {
            "name": "Deployment Orchestration Engine",
            "version": VERSION,
            "docs": "/docs",
            "health": "/health",
            "endpoints": {
                "deployments": "/v1/deployments",
            },
        }

    return app


app = create_app()


def main() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "deploy_engine.main:app",
        host=settings.server_host,
        port=settings.server_port,
    )


if __name__ == "__main__":
    main()
