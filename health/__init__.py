"""
Health check module for the session repository.

Checks the session store under a timeout, reporting response time, and
the liveness of the expiration sweeper.
"""

from health.service import (
    HealthCheckService,
    HealthStatus,
    DependencyHealth,
)

__all__ = [
    "HealthCheckService",
    "HealthStatus",
    "DependencyHealth",
]
