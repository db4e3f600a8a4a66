"""
Campaign Engine Main Application

Operational FastAPI app: health, readiness and liveness endpoints. The
lifespan runs the engine itself (recovery, scheduler ticks and event
consumers).
Port: 8240
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from core.config import get_settings

from . import __version__
from .factory import SERVICE_NAME, CampaignEngineFactory
from .models import HealthResponse, LivenessResponse, ReadinessResponse

settings = get_settings()

# Configure logging
settings.logging.configure()
logger = logging.getLogger(__name__)

SERVICE_PORT = settings.default_port

# Track startup time for uptime calculation
startup_time = time.time()

# Global factory instance
factory: Optional[CampaignEngineFactory] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager"""
    global factory

    logger.info(f"Starting {SERVICE_NAME} on port {SERVICE_PORT}")

    factory = CampaignEngineFactory(settings)
    await factory.initialize()
    await factory.recover()
    factory.scheduler.start()
    await factory.subscribe()

    yield

    # Cleanup
    logger.info(f"Shutting down {SERVICE_NAME}")
    await factory.close()
    factory = None


# Create FastAPI application
app = FastAPI(
    title="Campaign Engine",
    description="Segmentation, campaign dispatch, trigger automation and metric aggregation worker",
    version=__version__,
    lifespan=lifespan,
)


# ====================
# Health Endpoints
# ====================


@app.get("/health", response_model=HealthResponse, tags=["Health"])
async def health_check():
    """Health check endpoint"""
    dependencies = await factory.health_check() if factory else {}
    healthy = all(state != "unhealthy" for state in dependencies.values())

    return HealthResponse(
        status="healthy" if healthy else "degraded",
        service=SERVICE_NAME,
        port=SERVICE_PORT,
        version=__version__,
        dependencies=dependencies,
    )


@app.get("/health/ready", response_model=ReadinessResponse, tags=["Health"])
async def readiness_check():
    """Readiness check endpoint"""
    checks = {}
    if factory:
        dependencies = await factory.health_check()
        checks["database"] = dependencies.get("postgres") == "healthy"
        checks["scheduler"] = dependencies.get("scheduler") == "running"
    else:
        checks["factory"] = False

    return ReadinessResponse(ready=all(checks.values()), checks=checks)


@app.get("/health/live", response_model=LivenessResponse, tags=["Health"])
async def liveness_check():
    """Liveness check endpoint"""
    return LivenessResponse(
        alive=True,
        uptime_seconds=time.time() - startup_time,
    )


def main():
    """Run the engine with uvicorn"""
    import uvicorn

    uvicorn.run(
        "microservices.campaign_service.main:app",
        host=settings.default_host,
        port=SERVICE_PORT,
        log_level=settings.logging.log_level.lower(),
    )


if __name__ == "__main__":
    main()
