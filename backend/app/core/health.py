"""
Health check aggregation — deep health probe for all subsystems.

Checks:
    • Database connectivity (SELECT 1 through the async engine)
    • Push provider (credentials configured, access token cached)

Returns a structured health report suitable for:
    - Kubernetes liveness/readiness probes
    - Load balancer health checks
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from backend.app.alerts.channels.credentials import PushCredentials
from backend.app.core.config import settings

logger = logging.getLogger(__name__)


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"  # partial functionality
    UNHEALTHY = "unhealthy"


@dataclass
class ComponentHealth:
    name: str
    status: HealthStatus = HealthStatus.HEALTHY
    latency_ms: float = 0.0
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "name": self.name,
            "status": self.status.value,
            "latency_ms": round(self.latency_ms, 2),
        }
        if self.message:
            d["message"] = self.message
        if self.details:
            d["details"] = self.details
        return d


@dataclass
class HealthReport:
    status: HealthStatus = HealthStatus.HEALTHY
    version: str = settings.APP_VERSION
    environment: str = settings.ENVIRONMENT
    timestamp: str = ""
    uptime_seconds: float = 0.0
    components: List[ComponentHealth] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "version": self.version,
            "environment": self.environment,
            "timestamp": self.timestamp or datetime.now(timezone.utc).isoformat(),
            "uptime_seconds": round(self.uptime_seconds, 1),
            "components": [c.to_dict() for c in self.components],
        }


# Track application start time
_start_time = time.monotonic()


async def check_database(engine: AsyncEngine) -> ComponentHealth:
    """Run SELECT 1 on a pooled connection."""
    comp = ComponentHealth(name="database")
    start = time.monotonic()
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        comp.status = HealthStatus.HEALTHY
        comp.message = "Connection pool available"
        comp.details = {"dialect": engine.dialect.name}
    except (SQLAlchemyError, OSError) as e:
        logger.error("Database health probe failed: %s", e)
        comp.status = HealthStatus.UNHEALTHY
        comp.message = str(e)
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def check_push_provider(credentials: Optional[PushCredentials]) -> ComponentHealth:
    """Configuration-only probe; never triggers a token exchange."""
    comp = ComponentHealth(name="push_provider")
    start = time.monotonic()
    if credentials is None:
        comp.status = HealthStatus.DEGRADED
        comp.message = "Push credentials not configured; alerts are stored but not pushed"
    else:
        comp.status = HealthStatus.HEALTHY
        comp.message = "Push credentials configured"
        comp.details = {
            "project_id": settings.FIREBASE_PROJECT_ID,
            "token_cached": credentials.has_cached_token,
        }
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def run_health_check(
    engine: AsyncEngine,
    credentials: Optional[PushCredentials] = None,
) -> HealthReport:
    """Run all health checks and aggregate into a report."""
    report = HealthReport(
        timestamp=datetime.now(timezone.utc).isoformat(),
        uptime_seconds=time.monotonic() - _start_time,
    )

    checks = [
        check_database(engine),
        check_push_provider(credentials),
    ]

    # Run all checks
    for coro in checks:
        comp = await coro
        report.components.append(comp)

    # Aggregate status
    statuses = [c.status for c in report.components]
    if HealthStatus.UNHEALTHY in statuses:
        report.status = HealthStatus.UNHEALTHY
    elif HealthStatus.DEGRADED in statuses:
        report.status = HealthStatus.DEGRADED
    else:
        report.status = HealthStatus.HEALTHY

    return report
