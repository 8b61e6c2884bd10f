"""Health Check - liveness/readiness for the portal

Self-Explanatory: Database + encryption checks for probes.
Why: An HSM outage degrades reads to placeholder labels and blocks writes;
probes must report that instead of a static "ok".
How: Each component check returns {"status", "message", ...}; the overall
status is the worst component status.

K8s Integration:
- /api/health/live: Liveness probe (process up)
- /api/health/ready: Readiness probe (SQLite answers)
- /api/health: Comprehensive (database + encryption)
"""

import time
from datetime import datetime, timezone
from typing import Dict, Iterable

import structlog
from fastapi import status
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from civic_portal.database.db import Database
from civic_portal.security.encryption_service import EncryptionService

logger = structlog.get_logger()

PORTAL_VERSION = "1.0.0"


class HealthStatus:
    """Component states, ordered from best to worst"""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"

    ORDER = (HEALTHY, DEGRADED, UNHEALTHY)


def worst_status(statuses: Iterable[str]) -> str:
    return max(statuses, key=HealthStatus.ORDER.index, default=HealthStatus.HEALTHY)


def _component(state: str, message: str, **extra) -> Dict:
    return {"status": state, "message": message, **extra}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class HealthChecker:
    """Probe endpoints over the portal's database and encryption layer"""

    def __init__(self, db: Database, encryption: EncryptionService):
        self.db = db
        self.encryption = encryption
        self.started_at = time.time()

    @property
    def uptime_seconds(self) -> int:
        return int(time.time() - self.started_at)

    async def check_database(self) -> Dict:
        """SELECT 1 against SQLite, with round-trip latency"""
        began = time.perf_counter()
        try:
            with self.db.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError as e:
            logger.error("SQLite health check failed", db_path=self.db.db_path, error=str(e))
            return _component(HealthStatus.UNHEALTHY, "SQLite unreachable", error=str(e))

        return _component(
            HealthStatus.HEALTHY,
            "SQLite reachable",
            latency_ms=round((time.perf_counter() - began) * 1000, 2),
        )

    async def check_encryption(self) -> Dict:
        """Map the HSM client's report onto a component status

        Disabled and demo mode are degraded: the portal works, but PII is
        not protected by the HSM.
        """
        report = await self.encryption.health_check()

        if report["status"] == "disabled":
            return _component(HealthStatus.DEGRADED,
                              "Encryption not configured (plaintext storage)", details=report)
        if report["status"] == "unhealthy":
            return _component(HealthStatus.UNHEALTHY,
                              "HSM unreachable (reads use fallback labels, writes fail)",
                              details=report)
        if report.get("demo_mode"):
            return _component(HealthStatus.DEGRADED,
                              "Demo mode (simulated encryption)", details=report)
        return _component(HealthStatus.HEALTHY, "HSM session active", details=report)

    async def liveness_check(self) -> JSONResponse:
        return JSONResponse(
            status_code=status.HTTP_200_OK,
            content={"status": "alive", "timestamp": _now(), "uptime_seconds": self.uptime_seconds},
        )

    async def readiness_check(self) -> JSONResponse:
        """Ready once SQLite answers; the HSM is not required to serve reads"""
        database = await self.check_database()
        ready = database["status"] == HealthStatus.HEALTHY
        if not ready:
            logger.warning("Portal not ready", reason=database["message"])

        return JSONResponse(
            status_code=status.HTTP_200_OK if ready else status.HTTP_503_SERVICE_UNAVAILABLE,
            content={
                "status": "ready" if ready else "not_ready",
                "timestamp": _now(),
                "checks": {"database": database},
            },
        )

    async def comprehensive_check(self) -> Dict:
        components = {
            "database": await self.check_database(),
            "encryption": await self.check_encryption(),
        }
        return {
            "status": worst_status(c["status"] for c in components.values()),
            "timestamp": _now(),
            "uptime_seconds": self.uptime_seconds,
            "version": PORTAL_VERSION,
            "checks": components,
        }
