"""
Health check aggregation — deep health probe for all subsystems.

Checks:
    • Database connectivity (SELECT 1 through the session pool)
    • Live push registry (open, connection counts)
    • Delivery dispatcher (running, backlog)
    • SMS provider (configured backend)

Returns a structured health report suitable for:
    - Kubernetes liveness/readiness probes
    - Load balancer health checks
    - Monitoring dashboards
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List

from carewatch.app.core.config import settings

if TYPE_CHECKING:
    from carewatch.app.container import AlertContainer

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


async def check_database(container: "AlertContainer") -> ComponentHealth:
    comp = ComponentHealth(name="database")
    start = time.monotonic()
    try:
        await container.database.ping()
        comp.message = "Connection pool available"
        comp.details = {"url": container.database.display_url}
    except Exception as e:
        logger.warning("Database health check failed: %s", e)
        comp.status = HealthStatus.UNHEALTHY
        comp.message = str(e)
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def check_live_push(container: "AlertContainer") -> ComponentHealth:
    comp = ComponentHealth(name="live_push")
    start = time.monotonic()
    stats = container.registry.stats()
    comp.details = stats
    if container.registry.closed:
        comp.status = HealthStatus.UNHEALTHY
        comp.message = "Registry closed"
    else:
        comp.message = f"{stats['connected_users']} user(s) connected"
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def check_dispatcher(container: "AlertContainer") -> ComponentHealth:
    comp = ComponentHealth(name="delivery_dispatcher")
    start = time.monotonic()
    dispatcher = container.dispatcher
    backlog = dispatcher.pending()
    comp.details = {"workers": dispatcher.worker_count, "backlog": backlog, **dispatcher.stats.to_dict()}
    if not dispatcher.running:
        comp.status = HealthStatus.UNHEALTHY
        comp.message = "Dispatcher not running"
    elif backlog >= dispatcher.queue_max_size * 0.8:
        comp.status = HealthStatus.DEGRADED
        comp.message = f"Backlog near capacity: {backlog}/{dispatcher.queue_max_size}"
    else:
        comp.message = f"{backlog} job(s) queued"
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def check_sms_provider(container: "AlertContainer") -> ComponentHealth:
    comp = ComponentHealth(name="sms_provider")
    provider = container.provider
    comp.details = {"provider": provider.name}
    if provider.name == "simulation" and container.config.is_production:
        comp.status = HealthStatus.DEGRADED
        comp.message = "Simulated SMS in production"
    else:
        comp.message = f"{provider.name} configured"
    return comp


async def run_health_check(container: "AlertContainer") -> HealthReport:
    """Run all health checks and aggregate into a report."""
    report = HealthReport(
        timestamp=datetime.now(timezone.utc).isoformat(),
        uptime_seconds=time.monotonic() - _start_time,
    )

    checks = [
        check_database(container),
        check_live_push(container),
        check_dispatcher(container),
        check_sms_provider(container),
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
