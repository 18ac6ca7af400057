"""
Health and metrics endpoints:
- /health, /health/live: liveness
- /health/ready: dependency checks (database, configuration)
- /metrics: process stats plus counters from registered providers
"""

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.engine import Engine
from typing import Callable, Dict, Any, Optional
import os
import time
from datetime import datetime, timezone
from enum import Enum
import psutil
import logging

logger = logging.getLogger(__name__)

def _now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")

class HealthStatus(str, Enum):
    """Health status values"""
    PASS = "pass"
    FAIL = "fail"
    WARN = "warn"

class ServiceHealth:
    """
    Service health management. Readiness checks run against the service's
    own engine; metric providers are callables returning flat counter dicts.
    """

    def __init__(
        self,
        service_name: str,
        version: str = "1.0.0",
        engine_getter: Optional[Callable[[], Engine]] = None,
        required_settings: Optional[Dict[str, Callable[[], Any]]] = None,
    ):
        self.service_name = service_name
        self.version = version
        self.engine_getter = engine_getter
        self.required_settings = required_settings or {}
        self.metric_providers: Dict[str, Callable[[], Dict[str, Any]]] = {}
        self.start_time = time.time()
        self.checks_performed = 0
        self.last_check_time = None

    def register_metrics(self, name: str, provider: Callable[[], Dict[str, Any]]) -> None:
        self.metric_providers[name] = provider

    def create_health_router(self) -> APIRouter:
        router = APIRouter(tags=["health"])

        @router.get("/health", status_code=status.HTTP_200_OK)
        async def health_check() -> Dict[str, Any]:
            """Basic liveness probe - lightweight check"""
            return {
                "status": HealthStatus.PASS,
                "service": self.service_name,
                "version": self.version,
                "releaseId": os.getenv("RELEASE_ID", "unknown"),
                "timestamp": _now()
            }

        @router.get("/health/live", status_code=status.HTTP_200_OK)
        async def liveness() -> Dict[str, Any]:
            return {"status": "alive"}

        @router.get("/health/ready")
        def readiness() -> JSONResponse:
            """Readiness probe - checks dependencies and returns detailed status"""
            checks = self.perform_readiness_checks()
            overall_status = self.calculate_overall_status(checks)
            status_code = status.HTTP_503_SERVICE_UNAVAILABLE if overall_status == HealthStatus.FAIL else status.HTTP_200_OK

            return JSONResponse(status_code=status_code, content={
                "status": overall_status,
                "version": self.version,
                "releaseId": os.getenv("RELEASE_ID", "unknown"),
                "checks": checks,
                "serviceId": self.service_name,
                "timestamp": _now()
            })

        @router.get("/metrics")
        def metrics() -> Dict[str, Any]:
            process = psutil.Process()
            memory = process.memory_info()
            payload = {
                "service": self.service_name,
                "version": self.version,
                "uptime_seconds": time.time() - self.start_time,
                "checks_performed": self.checks_performed,
                "timestamp": _now(),
                "system": {
                    "memory_rss_bytes": memory.rss,
                    "memory_vms_bytes": memory.vms,
                    "cpu_percent": process.cpu_percent(),
                    "num_threads": process.num_threads()
                }
            }
            for name, provider in self.metric_providers.items():
                try:
                    payload[name] = provider()
                except Exception as e:
                    logger.error(f"Metrics provider {name} failed: {e}")
                    payload[name] = {"error": str(e)}
            return payload

        return router

    def perform_readiness_checks(self) -> Dict[str, Dict[str, Any]]:
        self.checks_performed += 1
        self.last_check_time = time.time()

        checks = {}
        if self.engine_getter is not None:
            checks["database:connectivity"] = self._check_database()
        checks["config:settings"] = self._check_settings()
        return checks

    def _check_database(self) -> Dict[str, Any]:
        """Check database connectivity"""
        try:
            start_time = time.time()
            with self.engine_getter().connect() as conn:
                conn.execute(text("SELECT 1")).fetchone()
            response_time = (time.time() - start_time) * 1000
            return {
                "status": HealthStatus.PASS,
                "componentType": "datastore",
                "observedValue": f"{response_time:.2f}ms",
                "observedUnit": "ms",
                "time": _now()
            }
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return {
                "status": HealthStatus.FAIL,
                "componentType": "datastore",
                "output": str(e),
                "time": _now()
            }

    def _check_settings(self) -> Dict[str, Any]:
        """Check required settings are present (values are never echoed)"""
        missing = sorted(name for name, getter in self.required_settings.items() if not getter())
        if missing:
            return {
                "status": HealthStatus.FAIL,
                "componentType": "configuration",
                "output": f"Missing settings: {', '.join(missing)}",
                "time": _now()
            }
        return {
            "status": HealthStatus.PASS,
            "componentType": "configuration",
            "time": _now()
        }

    @staticmethod
    def calculate_overall_status(checks: Dict[str, Dict[str, Any]]) -> HealthStatus:
        statuses = [check.get("status", HealthStatus.PASS) for check in checks.values()]
        if HealthStatus.FAIL in statuses:
            return HealthStatus.FAIL
        if HealthStatus.WARN in statuses:
            return HealthStatus.WARN
        return HealthStatus.PASS
