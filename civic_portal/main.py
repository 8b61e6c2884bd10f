"""Citizen Services Portal - FastAPI application

This file wires the database, the field encryption layer and the routers.
Run with: uvicorn civic_portal.main:app --reload
Access at: http://localhost:8000/docs

Encryption modes (decided once at startup from FORTANIX_* variables):
1. HSM: Fortanix DSM via API key or trusted-CA client certificates
2. Demo: placeholder API key -> simulated, reversible encoding
3. Disabled: no FORTANIX_* variables -> plaintext storage
"""

from typing import Optional

import structlog
import uvicorn
from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse

from civic_portal.citizens.router import router as citizens_router
from civic_portal.config import get_db_path
from civic_portal.database.db import Database
from civic_portal.database.encrypted_db import CitizenRepository, ServiceRequestRepository
from civic_portal.dependencies import get_encryption_service, get_health_checker
from civic_portal.security.encryption_service import EncryptionService
from civic_portal.security.errors import EncryptionFailed
from civic_portal.service_requests.router import router as service_requests_router
from civic_portal.utils.health_check import HealthChecker
from civic_portal.utils.metrics import get_metrics_text

# Set up structured logging
structlog.configure(
    processors=[
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.add_log_level,
        structlog.processors.JSONRenderer()
    ],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    wrapper_class=structlog.stdlib.BoundLogger,
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()


def create_app(
    encryption: Optional[EncryptionService] = None,
    db: Optional[Database] = None,
) -> FastAPI:
    """Build the app. Services default to ones built from the environment."""
    app = FastAPI(
        title="Citizen Services Portal",
        description="Citizen registry and service-request tracking with "
                    "HSM-backed field-level encryption of PII",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:3000", "http://localhost:80"],
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )

    app.include_router(citizens_router, prefix="/api/citizens", tags=["Citizens"])
    app.include_router(service_requests_router, prefix="/api/service-requests",
                       tags=["Service Requests"])

    # ========================================================================
    # STARTUP
    # ========================================================================

    @app.on_event("startup")
    async def startup_event():
        """Open the database and bring up the encryption layer"""
        logger.info("Citizen Services Portal starting")

        database = db or Database(get_db_path())
        database.create_tables()

        # ConfigurationError propagates: a half-configured HSM must stop startup
        service = encryption or EncryptionService.from_env()
        await service.initialize()

        app.state.db = database
        app.state.encryption = service
        app.state.citizens = CitizenRepository(database, service.codec)
        app.state.service_requests = ServiceRequestRepository(database, service.codec)
        app.state.health_checker = HealthChecker(database, service)

        logger.info(
            "Citizen Services Portal ready",
            encryption=service.get_encryption_config()["mode"],
        )

    # ========================================================================
    # ERRORS
    # ========================================================================

    @app.exception_handler(EncryptionFailed)
    async def encryption_failed_handler(request: Request, exc: EncryptionFailed):
        logger.error("Write aborted: encryption failed", path=request.url.path, error=str(exc))
        return JSONResponse(
            status_code=502,
            content={
                "success": False,
                "message": "Unable to protect sensitive data; record was not saved",
            },
        )

    # ========================================================================
    # HEALTH + METRICS
    # ========================================================================

    @app.get("/api/health")
    async def health_comprehensive(checker: HealthChecker = Depends(get_health_checker)):
        """Database + encryption status"""
        return await checker.comprehensive_check()

    @app.get("/api/health/live")
    async def health_live(checker: HealthChecker = Depends(get_health_checker)):
        """Kubernetes liveness probe"""
        return await checker.liveness_check()

    @app.get("/api/health/ready")
    async def health_ready(checker: HealthChecker = Depends(get_health_checker)):
        """Kubernetes readiness probe"""
        return await checker.readiness_check()

    @app.get("/api/health/encryption")
    async def health_encryption(service: EncryptionService = Depends(get_encryption_service)):
        """Raw HSM client health (never raises)"""
        return await service.health_check()

    @app.get("/api/encryption/config")
    async def encryption_config(service: EncryptionService = Depends(get_encryption_service)):
        """Classification table and HSM endpoint (no secrets)"""
        return service.get_encryption_config()

    @app.get("/metrics", response_class=PlainTextResponse)
    async def metrics():
        """Prometheus metrics endpoint"""
        return PlainTextResponse(get_metrics_text())

    return app


app = create_app()


if __name__ == "__main__":
    logger.info("Starting Citizen Services Portal server...")
    uvicorn.run("civic_portal.main:app", host="0.0.0.0", port=8000, reload=True)
