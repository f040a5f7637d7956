"""Health check functionality for chat-relay."""

import time
from typing import Any, Dict, List, Optional

import psutil

from . import __version__
from .metrics import HEALTH_CHECKS_TOTAL


class HealthChecker:
    """Health checker for the relay's collaborators."""

    def __init__(self, database=None, rate_limit_store=None, configured_vendors: Optional[List[str]] = None):
        self.start_time = time.time()
        self.database = database
        self.rate_limit_store = rate_limit_store
        self.configured_vendors = list(configured_vendors or [])

    def get_uptime_seconds(self) -> int:
        """Get service uptime in seconds."""
        return int(time.time() - self.start_time)

    async def check_database(self) -> Dict[str, Any]:
        """Check that the database answers a ping."""
        if self.database is None:
            return {"status": "ok", "backend": "memory"}
        try:
            if await self.database.ping():
                return {"status": "ok", "backend": "postgres"}
            return {"status": "error", "backend": "postgres", "error": "database unreachable"}
        except Exception as e:
            return {"status": "error", "backend": "postgres", "error": str(e)}

    async def check_rate_limit_store(self) -> Dict[str, Any]:
        """Check that the rate-limit store answers a ping."""
        if self.rate_limit_store is None:
            return {"status": "error", "error": "not configured"}
        backend = type(self.rate_limit_store).__name__
        try:
            if await self.rate_limit_store.ping():
                return {"status": "ok", "backend": backend}
            return {"status": "error", "backend": backend, "error": "store unreachable"}
        except Exception as e:
            return {"status": "error", "backend": backend, "error": str(e)}

    def check_providers(self) -> Dict[str, Any]:
        if not self.configured_vendors:
            return {"status": "error", "error": "no provider credentials configured"}
        return {"status": "ok", "configured": self.configured_vendors}

    def check_memory(self) -> Dict[str, Any]:
        """Check process memory usage."""
        process = psutil.Process()
        memory = psutil.virtual_memory()
        return {
            "status": "ok",
            "rss_mb": round(process.memory_info().rss / (1024**2), 2),
            "system_used_percent": round(memory.percent, 2),
        }

    def quick_health(self) -> Dict[str, Any]:
        """Liveness: the process is up."""
        HEALTH_CHECKS_TOTAL.labels(endpoint="quick", status="ok").inc()
        return {
            "status": "healthy",
            "version": __version__,
            "uptime_seconds": self.get_uptime_seconds()
        }

    async def readiness_health(self) -> Dict[str, Any]:
        """Readiness: storage and the rate-limit store are reachable and a vendor is configured."""
        checks = {
            "database": await self.check_database(),
            "rate_limit_store": await self.check_rate_limit_store(),
            "providers": self.check_providers(),
            "memory": self.check_memory(),
        }

        all_ok = all(check.get("status") == "ok" for check in checks.values())

        HEALTH_CHECKS_TOTAL.labels(endpoint="ready", status="ok" if all_ok else "error").inc()

        return {
            "status": "ready" if all_ok else "not_ready",
            "version": __version__,
            "uptime_seconds": self.get_uptime_seconds(),
            "checks": checks
        }
