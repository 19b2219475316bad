"""
Health checks for liveness/readiness probes.

Checks:
- Database connectivity
"""
from typing import Any, Dict, Optional

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from entitlement_ledger.config import get_settings
from entitlement_ledger.database.connection import get_session_factory

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when health check fails."""

    pass


class HealthCheck:
    """Health check service for the ledger's storage dependency."""

    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None) -> None:
        self.settings = get_settings()
        self._session_factory = session_factory

    async def check_database(self) -> Dict[str, Any]:
        """
        Check database connectivity.

        Returns:
            Dict[str, Any]: Database health status

        Raises:
            HealthCheckError: If database check fails
        """
        try:
            session_factory = self._session_factory or get_session_factory()
            async with session_factory() as db:
                result = await db.execute(text("SELECT 1"))
                result.scalar()

                return {
                    "status": "healthy",
                    "service": "database",
                    "message": "Database connection successful",
                }

        except Exception as e:
            logger.error("database_health_check_failed", error=str(e))
            raise HealthCheckError(f"Database health check failed: {str(e)}")

    async def check_all(self) -> Dict[str, Any]:
        """
        Run all health checks.

        Returns:
            Dict[str, Any]: Overall status plus per-check results
        """
        checks: Dict[str, Any] = {}
        overall = "healthy"

        try:
            checks["database"] = await self.check_database()
        except HealthCheckError as e:
            checks["database"] = {"status": "unhealthy", "service": "database", "message": str(e)}
            overall = "unhealthy"

        return {"status": overall, "checks": checks}

    async def liveness(self) -> Dict[str, Any]:
        """Liveness only proves the process is serving requests."""
        return {"status": "healthy", "checks": {}}

    async def readiness(self) -> Dict[str, Any]:
        """Ready when the database answers."""
        return await self.check_all()
