"""
Health check service for the session repository.

Reports whether the session store answers within a timeout, with its
response time, and whether the expiration sweeper is alive. A store
failure makes the service unhealthy; a stalled sweeper only degrades it,
since sessions keep working and the native TTLs still reclaim space.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Any

from session.store import SessionStore
from session.sweeper import ExpirationSweeper

logger = logging.getLogger(__name__)

CRITICAL_DEPENDENCIES = ("session_store",)


@dataclass
class DependencyHealth:
    """
    Health status of a single dependency.

    Attributes:
        name: The name of the dependency (e.g., "session_store", "sweeper")
        healthy: Whether the dependency is healthy and responding
        response_time_ms: The time taken to check the dependency in milliseconds
        error: Optional error message if the dependency check failed
    """
    name: str
    healthy: bool
    response_time_ms: float
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result = {
            "name": self.name,
            "healthy": self.healthy,
            "response_time_ms": round(self.response_time_ms, 2),
        }
        if self.error is not None:
            result["error"] = self.error
        return result


@dataclass
class HealthStatus:
    """
    Overall health status of the service.

    Attributes:
        status: Overall status - "healthy", "degraded", or "unhealthy"
        timestamp: When the health check was performed
        dependencies: List of individual dependency health statuses
    """
    status: str
    timestamp: datetime
    dependencies: list[DependencyHealth] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "status": self.status,
            "timestamp": self.timestamp.isoformat(),
            "dependencies": [dep.to_dict() for dep in self.dependencies],
        }


class HealthCheckService:
    """
    Service for checking the health of the session stack.

    Attributes:
        session_store: The store to ping
        sweeper: Optional expiration sweeper whose loop is checked
        check_timeout: Timeout in seconds for dependency checks (default: 5.0)
    """

    def __init__(
        self,
        session_store: SessionStore,
        sweeper: Optional[ExpirationSweeper] = None,
        check_timeout: float = 5.0
    ):
        """
        Initialize the HealthCheckService.

        Args:
            session_store: The session store instance (Redis or in-memory)
            sweeper: Optional sweeper; omitted when another process sweeps
            check_timeout: Timeout in seconds for dependency checks (default: 5.0)
        """
        self.session_store = session_store
        self.sweeper = sweeper
        self.check_timeout = check_timeout

    async def check_readiness(self) -> HealthStatus:
        """
        Check all dependencies for readiness.

        Returns:
            HealthStatus: The aggregate health status with individual dependency statuses
        """
        dependencies = [await self._check_session_store()]
        if self.sweeper is not None:
            dependencies.append(self._check_sweeper())

        return HealthStatus(
            status=self._determine_overall_status(dependencies),
            timestamp=datetime.now(timezone.utc),
            dependencies=dependencies
        )

    async def check_liveness(self) -> dict[str, Any]:
        """
        Simple liveness check - process is running.

        It does not check external dependencies.
        """
        return {
            "status": "alive",
            "timestamp": datetime.now(timezone.utc).isoformat()
        }

    async def _check_session_store(self) -> DependencyHealth:
        """Ping the store, bounded by check_timeout."""
        start_time = time.perf_counter()
        error: Optional[str] = None

        try:
            if not await asyncio.wait_for(
                self.session_store.health_check(),
                timeout=self.check_timeout
            ):
                error = "Session store health check returned False"
        except asyncio.TimeoutError:
            error = f"Session store health check timed out after {self.check_timeout} seconds"
        except Exception as e:
            error = f"Session store health check failed: {e}"

        elapsed_ms = (time.perf_counter() - start_time) * 1000
        if error is None:
            logger.debug(f"Session store health check passed in {elapsed_ms:.2f}ms")
        else:
            logger.warning(error, extra={"extra_data": {"response_time_ms": round(elapsed_ms, 2)}})

        return DependencyHealth(
            name="session_store",
            healthy=error is None,
            response_time_ms=elapsed_ms,
            error=error
        )

    def _check_sweeper(self) -> DependencyHealth:
        if not self.sweeper.is_running:
            return DependencyHealth(
                name="sweeper",
                healthy=False,
                response_time_ms=0.0,
                error="Expiration sweeper is not running"
            )
        if self.sweeper.last_error is not None:
            return DependencyHealth(
                name="sweeper",
                healthy=False,
                response_time_ms=0.0,
                error=f"Last sweep failed: {self.sweeper.last_error}"
            )
        return DependencyHealth(name="sweeper", healthy=True, response_time_ms=0.0)

    def _determine_overall_status(self, dependencies: list[DependencyHealth]) -> str:
        """
        Determine the overall health status based on dependency health.

        Status determination:
        - "healthy": All dependencies are healthy
        - "degraded": Only non-critical dependencies are unhealthy
        - "unhealthy": The session store is unhealthy
        """
        unhealthy = [dep.name for dep in dependencies if not dep.healthy]
        if not unhealthy:
            return "healthy"
        if any(name in CRITICAL_DEPENDENCIES for name in unhealthy):
            return "unhealthy"
        return "degraded"
