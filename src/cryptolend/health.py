"""
Health and readiness check utilities.
"""

from enum import Enum
from typing import Any, Callable, Dict, List, Optional
from datetime import datetime

import httpx
from fastapi import FastAPI, Response
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError

from cryptolend import __version__
from cryptolend.logging import get_logger
from cryptolend.shared import utcnow

logger = get_logger(__name__)


class HealthStatus(str, Enum):
    """Health check status."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class ComponentHealth(BaseModel):
    """Health status of a single component."""
    name: str
    status: HealthStatus
    message: Optional[str] = None
    last_check: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ServiceHealth(BaseModel):
    """Overall service health status."""
    service: str
    status: HealthStatus
    timestamp: datetime
    components: List[ComponentHealth]
    version: str = __version__


class HealthChecker:
    """Manages health checks for a service."""

    def __init__(self, service_name: str):
        self.service_name = service_name
        self.checks: Dict[str, Callable[[], ComponentHealth]] = {}
        self.last_results: Dict[str, ComponentHealth] = {}

    def register_check(self, name: str, check_func: Callable[[], ComponentHealth]):
        """Register a health check function."""
        self.checks[name] = check_func
        logger.info(f"Registered health check: {name}")

    def check_health(self) -> ServiceHealth:
        """Run all health checks and return overall status."""
        components = []
        overall_status = HealthStatus.HEALTHY

        for name, check_func in self.checks.items():
            try:
                result = check_func()
            except Exception as e:
                logger.error(f"Health check failed for {name}: {e}")
                result = ComponentHealth(
                    name=name,
                    status=HealthStatus.UNHEALTHY,
                    message=f"Check failed: {str(e)}",
                )

            result.last_check = utcnow()
            self.last_results[name] = result
            components.append(result)

            if result.status == HealthStatus.UNHEALTHY:
                overall_status = HealthStatus.UNHEALTHY
            elif result.status == HealthStatus.DEGRADED and overall_status == HealthStatus.HEALTHY:
                overall_status = HealthStatus.DEGRADED

        return ServiceHealth(
            service=self.service_name,
            status=overall_status,
            timestamp=utcnow(),
            components=components
        )

    def is_ready(self) -> bool:
        """Check if service is ready to handle requests."""
        health = self.check_health()
        return health.status != HealthStatus.UNHEALTHY


def create_health_endpoints(app: FastAPI, health_checker: HealthChecker):
    """Add health and readiness endpoints to FastAPI app."""

    @app.get("/healthz")
    async def health_check() -> ServiceHealth:
        """Health check endpoint."""
        return health_checker.check_health()

    @app.get("/ready")
    async def readiness_check(response: Response):
        """Readiness check endpoint."""
        if health_checker.is_ready():
            return {"status": "ready"}
        else:
            response.status_code = 503
            return {"status": "not ready"}


# Common health check functions

def database_health_check(storage) -> ComponentHealth:
    """Check the ledger database answers queries."""
    try:
        storage.ping()
        return ComponentHealth(
            name="database",
            status=HealthStatus.HEALTHY,
            message="Database reachable",
            metadata={"dialect": storage.engine.dialect.name}
        )
    except SQLAlchemyError as e:
        return ComponentHealth(
            name="database",
            status=HealthStatus.UNHEALTHY,
            message=str(e),
        )


def price_feed_health_check(snapshot, max_age_seconds: float) -> ComponentHealth:
    """Check the price snapshot is populated and recent."""
    if not snapshot.prices:
        return ComponentHealth(
            name="price_feed",
            status=HealthStatus.UNHEALTHY,
            message="No collateral prices available",
            metadata={"source": snapshot.source}
        )

    age = (utcnow() - snapshot.captured_at).total_seconds()
    if snapshot.source != "static" and age > max_age_seconds:
        return ComponentHealth(
            name="price_feed",
            status=HealthStatus.DEGRADED,
            message=f"Prices are {age:.0f} seconds old",
            metadata={"source": snapshot.source, "age_seconds": age}
        )

    return ComponentHealth(
        name="price_feed",
        status=HealthStatus.HEALTHY,
        message=f"{len(snapshot.prices)} assets priced",
        metadata={"source": snapshot.source}
    )


def coingecko_health_check(url: str, timeout: float = 5.0) -> ComponentHealth:
    """Check the upstream CoinGecko API responds to /ping."""
    try:
        response = httpx.get(f"{url}/ping", timeout=timeout)
        if response.status_code == 200:
            return ComponentHealth(
                name="coingecko",
                status=HealthStatus.HEALTHY,
                message="Price API is reachable",
                metadata={"url": url}
            )
        else:
            return ComponentHealth(
                name="coingecko",
                status=HealthStatus.DEGRADED,
                message=f"Unexpected status code: {response.status_code}",
                metadata={"url": url}
            )
    except httpx.HTTPError as e:
        return ComponentHealth(
            name="coingecko",
            status=HealthStatus.DEGRADED,
            message=str(e),
            metadata={"url": url}
        )
