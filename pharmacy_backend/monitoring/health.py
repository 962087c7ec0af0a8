"""
Health check endpoints for Kubernetes readiness and liveness checks.

Checks:
- Database connectivity
- M-Pesa configuration completeness
"""
from typing import TYPE_CHECKING, Any, Dict

import structlog
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

if TYPE_CHECKING:
    from pharmacy_backend.database.connection import Database
    from pharmacy_backend.integrations.mpesa_client import MpesaClient

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when health check fails."""

    pass


class HealthCheck:
    """
    Health check service for monitoring system dependencies.

    The gateway check only inspects configuration: probing Daraja on every
    readiness call would spend OAuth requests.
    """

    def __init__(self, database: "Database", gateway: "MpesaClient") -> None:
        self.database = database
        self.gateway = gateway

    async def check_database(self) -> Dict[str, Any]:
        """
        Check database connectivity.

        Raises:
            HealthCheckError: If database check fails
        """
        try:
            async with self.database.session() as session:
                result = await session.execute(text("SELECT 1"))
                result.scalar()
        except (SQLAlchemyError, OSError) as e:
            logger.error("database_health_check_failed", error=str(e))
            raise HealthCheckError(f"Database health check failed: {str(e)}")

        return {
            "status": "healthy",
            "service": "database",
            "message": "Database connection successful",
        }

    def check_mpesa(self) -> Dict[str, Any]:
        """
        Report whether every M-Pesa setting is present.

        Raises:
            HealthCheckError: If configuration is incomplete
        """
        missing = self.gateway.validate_configuration()
        if missing:
            logger.warning("mpesa_health_check_failed", missing=missing)
            raise HealthCheckError(f"M-Pesa configuration incomplete: {', '.join(missing)}")
        return {
            "status": "healthy",
            "service": "mpesa",
            "message": "M-Pesa configuration complete",
            "environment": self.gateway.settings.mpesa_environment,
            "circuit_breaker": self.gateway.circuit_breaker.state,
        }

    async def check_all(self) -> Dict[str, Any]:
        """
        Run all health checks.

        Returns:
            Dict[str, Any]: Overall health status
        """
        checks = {}
        all_healthy = True

        try:
            checks["database"] = await self.check_database()
        except HealthCheckError as e:
            checks["database"] = {
                "status": "unhealthy",
                "service": "database",
                "error": str(e),
            }
            all_healthy = False

        try:
            checks["mpesa"] = self.check_mpesa()
        except HealthCheckError as e:
            checks["mpesa"] = {
                "status": "unhealthy",
                "service": "mpesa",
                "error": str(e),
            }
            all_healthy = False

        return {
            "status": "healthy" if all_healthy else "unhealthy",
            "checks": checks,
        }

    async def liveness(self) -> Dict[str, Any]:
        """
        Liveness check endpoint.

        Does not check external dependencies.
        """
        return {
            "status": "alive",
            "message": "Application is running",
        }

    async def readiness(self) -> Dict[str, Any]:
        """Readiness check: all dependencies must be available."""
        return await self.check_all()
