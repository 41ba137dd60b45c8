"""
Main API service for the Teams meeting agent.
Provides REST endpoints for meetings, agent attendance and directory search.
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from shared.config import get_settings
from shared.errors import MeetingAgentError
from services.teams_agent.main import create_meeting_agent_service

from .dao import MongoDBDAO, set_dao_instance
from .routes import meetings, users
from .service_meeting import set_agent_instance

settings = get_settings()

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting API service...")
    dao = MongoDBDAO()
    agent = None

    try:
        await dao.initialize()
        set_dao_instance(dao)

        agent = create_meeting_agent_service(dao)
        await agent.start()
        set_agent_instance(agent)

        logger.info("API service initialized successfully")
        yield

    except Exception as e:
        logger.error(f"Failed to initialize API service: {e}")
        raise
    finally:
        logger.info("Shutting down API service...")
        if agent is not None:
            await agent.stop()
        await dao.close()


app = FastAPI(
    title=settings.app_name,
    description="Schedules Teams meetings and runs an AI agent that captures and summarizes meeting chat",
    version=settings.app_version,
    lifespan=lifespan,
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.get_cors_origins(),
    allow_credentials=settings.cors_allow_credentials,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(meetings.router, prefix=f"{settings.api_prefix}/meetings", tags=["meetings"])
app.include_router(users.router, prefix=f"{settings.api_prefix}/users", tags=["users"])


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "service": "api",
        "version": settings.app_version,
    }


@app.exception_handler(MeetingAgentError)
async def meeting_agent_exception_handler(request, exc: MeetingAgentError):
    return JSONResponse(status_code=exc.status_code, content={"detail": str(exc)})


@app.exception_handler(Exception)
async def global_exception_handler(request, exc):
    """Global exception handler."""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(status_code=500, content={"detail": str(exc) or "Internal server error"})


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "services.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
    )
