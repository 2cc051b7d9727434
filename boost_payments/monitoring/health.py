"""
Health checks for readiness probes.

Checks:
- Database connectivity
- Redis connectivity (only when a shared store is configured)
"""
from typing import Any, Callable, Dict, Optional

import redis.asyncio as aioredis
import structlog
from sqlalchemy import text

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when health check fails."""

    pass


class HealthCheck:
    """Checks the service's storage dependencies."""

    def __init__(
        self,
        session_factory: Optional[Callable[[], Any]] = None,
        redis_url: Optional[str] = None,
    ):
        """
        Initialize health check service.

        Args:
            session_factory: Async session factory; database check skipped when None
            redis_url: Redis URL; Redis check skipped when None
        """
        self.session_factory = session_factory
        self.redis_url = redis_url

    async def check_database(self) -> Dict[str, Any]:
        """
        Check database connectivity.

        Raises:
            HealthCheckError: If database check fails
        """
        if self.session_factory is None:
            return {"status": "skipped", "service": "database"}
        try:
            async with self.session_factory() as db:
                result = await db.execute(text("SELECT 1"))
                result.scalar()
        except Exception as e:
            logger.error("database_health_check_failed", error=str(e))
            raise HealthCheckError(f"Database health check failed: {e}") from e
        return {"status": "healthy", "service": "database"}

    async def check_redis(self) -> Dict[str, Any]:
        """
        Check Redis connectivity.

        Raises:
            HealthCheckError: If Redis check fails
        """
        if not self.redis_url:
            return {"status": "skipped", "service": "redis"}
        redis_client: aioredis.Redis | None = None
        try:
            redis_client = aioredis.from_url(self.redis_url, decode_responses=True)
            await redis_client.ping()
        except Exception as e:
            logger.error("redis_health_check_failed", error=str(e))
            raise HealthCheckError(f"Redis health check failed: {e}") from e
        finally:
            if redis_client is not None:
                await redis_client.aclose()
        return {"status": "healthy", "service": "redis"}

    async def check_all(self) -> Dict[str, Any]:
        """
        Run every check.

        Returns:
            Dict[str, Any]: Overall status and per-dependency results
        """
        checks: Dict[str, Any] = {}
        healthy = True
        for name, check in (("database", self.check_database), ("redis", self.check_redis)):
            try:
                checks[name] = await check()
            except HealthCheckError as e:
                healthy = False
                checks[name] = {"status": "unhealthy", "service": name, "message": str(e)}
        return {"status": "healthy" if healthy else "unhealthy", "checks": checks}
