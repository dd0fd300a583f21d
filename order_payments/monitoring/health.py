"""
Health checks for liveness/readiness probes.

Checks:
- Database connectivity
- Redis connectivity (only when a ledger cache is configured)
- Gateway reachability
"""
from typing import Any, Dict, Optional

import redis.asyncio as aioredis
import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when a health check fails."""


class HealthCheck:
    """
    Health check service for the payment dependencies.

    `gateway` is any object with an async `ping()`; the Stripe adapter
    provides one.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: Any,
        redis_client: Optional[aioredis.Redis] = None,
    ) -> None:
        self.session_factory = session_factory
        self.gateway = gateway
        self.redis_client = redis_client

    async def check_database(self) -> Dict[str, Any]:
        """
        Check database connectivity.

        Raises:
            HealthCheckError: If the database check fails
        """
        try:
            async with self.session_factory() as session:
                result = await session.execute(text("SELECT 1"))
                result.scalar()
        except Exception as e:
            logger.error("database_health_check_failed", error=str(e))
            raise HealthCheckError(f"Database health check failed: {e}")

        return {
            "status": "healthy",
            "service": "database",
            "message": "Database connection successful",
        }

    async def check_redis(self) -> Dict[str, Any]:
        """
        Check Redis connectivity.

        Raises:
            HealthCheckError: If the Redis check fails
        """
        if self.redis_client is None:
            return {"status": "skipped", "service": "redis", "message": "Redis not configured"}

        try:
            await self.redis_client.ping()
        except Exception as e:
            logger.error("redis_health_check_failed", error=str(e))
            raise HealthCheckError(f"Redis health check failed: {e}")

        return {
            "status": "healthy",
            "service": "redis",
            "message": "Redis connection successful",
        }

    async def check_gateway(self) -> Dict[str, Any]:
        """
        Check gateway API reachability.

        Raises:
            HealthCheckError: If the gateway check fails
        """
        try:
            await self.gateway.ping()
        except Exception as e:
            logger.error("gateway_health_check_failed", error=str(e))
            raise HealthCheckError(f"Gateway health check failed: {e}")

        return {
            "status": "healthy",
            "service": "gateway",
            "message": "Gateway API connection successful",
        }

    async def check_all(self) -> Dict[str, Any]:
        checks: Dict[str, Any] = {}
        all_healthy = True

        for name, check in (
            ("database", self.check_database),
            ("redis", self.check_redis),
            ("gateway", self.check_gateway),
        ):
            try:
                checks[name] = await check()
            except HealthCheckError as e:
                checks[name] = {"status": "unhealthy", "service": name, "error": str(e)}
                all_healthy = False

        return {
            "status": "healthy" if all_healthy else "unhealthy",
            "checks": checks,
        }

    async def liveness(self) -> Dict[str, Any]:
        """Application is running; no dependencies are checked."""
        return {
            "status": "alive",
            "message": "Application is running",
        }

    async def readiness(self) -> Dict[str, Any]:
        return await self.check_all()
