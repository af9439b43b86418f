"""
Health Check and System Monitoring Module

This module provides health check capabilities for the bridge components.
"""
from typing import Dict, List, Optional
from datetime import datetime
from enum import Enum
import traceback
from loguru import logger


class HealthStatus(str, Enum):
    """Health check status levels"""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class ComponentHealth:
    """Health check result for a single component"""

    def __init__(
        self,
        name: str,
        status: HealthStatus,
        message: str = "",
        details: Optional[Dict] = None
    ):
        self.name = name
        self.status = status
        self.message = message
        self.details = details or {}
        self.checked_at = datetime.utcnow()

    def to_dict(self) -> Dict:
        """Convert to dictionary"""
        return {
            "name": self.name,
            "status": self.status.value,
            "message": self.message,
            "details": self.details,
            "checked_at": self.checked_at.isoformat()
        }


class HealthChecker:
    """Health checker for the conversions bridge"""

    def __init__(self):
        self.checks: List[ComponentHealth] = []

    def check_configuration(self, settings) -> ComponentHealth:
        """Check that the Conversions API credentials are present"""
        missing_configs = []
        if not settings.meta_pixel_id:
            missing_configs.append("META_PIXEL_ID")
        if not settings.meta_access_token:
            missing_configs.append("META_ACCESS_TOKEN")

        if missing_configs:
            return ComponentHealth(
                name="configuration",
                status=HealthStatus.UNHEALTHY,
                message=f"Missing required configuration: {', '.join(missing_configs)}",
                details={"missing": missing_configs}
            )

        details = {
            "attribution_window_hours": settings.attribution_window_hours,
            "dedup_window_hours": settings.dedup_window_hours,
            "require_confirmed_status": settings.require_confirmed_status,
            "pii_fallback_enabled": settings.pii_fallback_enabled,
            "event_time_policy": settings.event_time_policy,
            "value_policy": settings.value_policy,
        }
        if not settings.webhook_secret:
            return ComponentHealth(
                name="configuration",
                status=HealthStatus.DEGRADED,
                message="WEBHOOK_SECRET not set; booking webhook is unauthenticated",
                details=details
            )

        return ComponentHealth(
            name="configuration",
            status=HealthStatus.HEALTHY,
            message="All required configuration present",
            details=details
        )

    def check_stores(self, context) -> ComponentHealth:
        """Report in-memory store sizes"""
        try:
            return ComponentHealth(
                name="stores",
                status=HealthStatus.HEALTHY,
                message="In-memory stores available (state is lost on restart)",
                details={
                    "attribution_records": len(context.attribution_store),
                    "dedup_records": len(context.dedup_store),
                }
            )
        except TypeError as e:
            return ComponentHealth(
                name="stores",
                status=HealthStatus.DEGRADED,
                message=f"Store size unavailable: {str(e)}"
            )

    def check_all(self, settings, context) -> Dict:
        """Run all health checks"""
        try:
            self.checks = [
                self.check_configuration(settings),
                self.check_stores(context),
            ]

            statuses = [check.status for check in self.checks]

            if all(s == HealthStatus.HEALTHY for s in statuses):
                overall_status = HealthStatus.HEALTHY
            elif any(s == HealthStatus.UNHEALTHY for s in statuses):
                overall_status = HealthStatus.UNHEALTHY
            else:
                overall_status = HealthStatus.DEGRADED

            return {
                "status": overall_status.value,
                "timestamp": datetime.utcnow().isoformat(),
                "components": [check.to_dict() for check in self.checks],
                "summary": {
                    "total": len(self.checks),
                    "healthy": len([c for c in self.checks if c.status == HealthStatus.HEALTHY]),
                    "degraded": len([c for c in self.checks if c.status == HealthStatus.DEGRADED]),
                    "unhealthy": len([c for c in self.checks if c.status == HealthStatus.UNHEALTHY])
                }
            }
        except Exception as e:
            logger.error(f"Health check failed: {e}\n{traceback.format_exc()}")
            return {
                "status": HealthStatus.UNHEALTHY.value,
                "timestamp": datetime.utcnow().isoformat(),
                "error": str(e),
                "components": [],
                "summary": {"total": 0, "healthy": 0, "degraded": 0, "unhealthy": 0}
            }
