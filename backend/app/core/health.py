"""
Health check aggregation — deep health probe for all subsystems.

Checks:
    • Database connectivity (SELECT 1 through the async engine)
    • Messaging provider (degraded while messages are simulated)
    • Cache connectivity (Redis; degraded when unreachable)

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
from typing import Any, Dict, List

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from backend.app.core.cache import cache_ping
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


_start_time = time.monotonic()


def _redact_url(url: str) -> str:
    return url.split("@")[-1] if "@" in url else url


async def check_database(engine: AsyncEngine) -> ComponentHealth:
    """Round-trip a trivial query through the pool."""
    comp = ComponentHealth(name="database")
    start = time.monotonic()
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        comp.message = "Connection pool available"
    except (SQLAlchemyError, OSError) as e:
        logger.error("Database health check failed: %s", e)
        comp.status = HealthStatus.UNHEALTHY
        comp.message = str(e)
    comp.details = {"url": _redact_url(str(engine.url))}
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def check_messaging(provider_configured: bool) -> ComponentHealth:
    """Report whether WhatsApp messages really go out."""
    comp = ComponentHealth(name="messaging_provider")
    if provider_configured:
        comp.message = "Twilio WhatsApp configured"
    else:
        comp.status = HealthStatus.DEGRADED
        comp.message = "Credentials missing, messages are simulated"
    comp.details = {"provider_configured": provider_configured}
    return comp


async def check_redis() -> ComponentHealth:
    """Check Redis connectivity. Only the duplicate-trigger policy needs it."""
    comp = ComponentHealth(name="redis")
    start = time.monotonic()
    if await cache_ping():
        comp.message = "Cache available"
    else:
        comp.status = HealthStatus.DEGRADED
        comp.message = "Cache unreachable, idempotency keys disabled"
    comp.details = {"url": _redact_url(settings.REDIS_URL)}
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def run_health_check(engine: AsyncEngine, *, provider_configured: bool) -> HealthReport:
    """Run all health checks and aggregate into a report."""
    report = HealthReport(
        timestamp=datetime.now(timezone.utc).isoformat(),
        uptime_seconds=time.monotonic() - _start_time,
    )

    checks = [
        check_database(engine),
        check_messaging(provider_configured),
        check_redis(),
    ]

    for coro in checks:
        comp = await coro
        report.components.append(comp)

    statuses = [c.status for c in report.components]
    if HealthStatus.UNHEALTHY in statuses:
        report.status = HealthStatus.UNHEALTHY
    elif HealthStatus.DEGRADED in statuses:
        report.status = HealthStatus.DEGRADED
    else:
        report.status = HealthStatus.HEALTHY

    return report
