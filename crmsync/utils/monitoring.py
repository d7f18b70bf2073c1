"""
Monitoring and health check utilities
Process metrics, dependency checks and the liveness / readiness probes
"""

import time
from datetime import datetime
from typing import Any, Dict, Optional

import psutil
import structlog

logger = structlog.get_logger("crmsync.monitoring")

MAX_MEMORY_MB = 1024
MAX_WAITING_JOBS = 1000


class MonitoringManager:
    """System monitoring and health checks"""

    def __init__(self, database=None, cache=None, queue=None, webhook_topic: Optional[str] = None):
        self.database = database
        self.cache = cache
        self.queue = queue
        self.webhook_topic = webhook_topic
        self.start_time = datetime.utcnow()
        self._process = psutil.Process()

    async def check_database(self) -> Dict[str, Any]:
        """Check database connectivity and performance"""
        if self.database is None:
            return {"status": "unhealthy", "error": "Database not configured"}
        try:
            started = time.perf_counter()
            await self.database.check_connection()
            return {
                "status": "healthy",
                "response_time_ms": round((time.perf_counter() - started) * 1000, 2)
            }
        except Exception as e:
            return {"status": "unhealthy", "error": str(e)}

    async def check_redis(self) -> Dict[str, Any]:
        """Check Redis connectivity"""
        if self.cache is None:
            return {"status": "unhealthy", "error": "No Redis connection"}
        try:
            started = time.perf_counter()
            await self.cache.ping()
            response_time = time.perf_counter() - started
            return {
                "status": "healthy",
                "response_time_ms": round(response_time * 1000, 2),
                "memory_usage": await self.cache.info_memory()
            }
        except Exception as e:
            return {"status": "unhealthy", "error": str(e)}

    def get_memory_usage(self) -> Dict[str, Any]:
        """Memory of this process"""
        try:
            rss_mb = round(self._process.memory_info().rss / (1024 ** 2), 2)
            return {
                "status": "healthy" if rss_mb < MAX_MEMORY_MB else "unhealthy",
                "rss_mb": rss_mb,
                "percent_used": round(self._process.memory_percent(), 2)
            }
        except psutil.Error as e:
            return {"status": "unhealthy", "error": str(e)}

    def check_queue(self) -> Dict[str, Any]:
        if self.queue is None or self.webhook_topic is None:
            return {"status": "unhealthy", "error": "Queue not configured"}
        try:
            stats = self.queue.stats(self.webhook_topic).to_dict()
        except KeyError as e:
            return {"status": "unhealthy", "error": str(e)}
        return {
            "status": "healthy" if stats["waiting"] < MAX_WAITING_JOBS else "unhealthy",
            **stats
        }

    def get_uptime(self) -> Dict[str, Any]:
        """Get application uptime"""
        uptime = datetime.utcnow() - self.start_time
        return {
            "uptime_seconds": int(uptime.total_seconds()),
            "uptime_human": str(uptime).split('.')[0],  # Remove microseconds
            "start_time": self.start_time.isoformat()
        }

    async def health_check(self) -> Dict[str, Any]:
        """Comprehensive health check"""
        checks = {
            "database": await self.check_database(),
            "redis": await self.check_redis(),
            "memory": self.get_memory_usage(),
            "queues": self.check_queue(),
        }

        health_status = {
            "status": "healthy",
            "timestamp": datetime.utcnow().isoformat(),
            "uptime": self.get_uptime(),
            "checks": checks
        }

        unhealthy_checks = [name for name, result in checks.items() if result.get("status") != "healthy"]
        # Память и очередь - деградация, а не отказ
        if {"database", "redis"} & set(unhealthy_checks):
            health_status["status"] = "unhealthy"
        elif unhealthy_checks:
            health_status["status"] = "degraded"
        if unhealthy_checks:
            health_status["unhealthy_checks"] = unhealthy_checks
            logger.warning("Health check failed", unhealthy_checks=unhealthy_checks)

        return health_status

    async def readiness(self) -> Dict[str, Any]:
        """Database and Redis must both answer"""
        database = await self.check_database()
        redis = await self.check_redis()
        ready = database["status"] == "healthy" and redis["status"] == "healthy"
        result = {
            "status": "ready" if ready else "not ready",
            "timestamp": datetime.utcnow().isoformat()
        }
        if not ready:
            result["errors"] = {
                name: check.get("error")
                for name, check in (("database", database), ("redis", redis))
                if check["status"] != "healthy"
            }
        return result

    def liveness(self) -> Dict[str, Any]:
        return {
            "status": "alive",
            "timestamp": datetime.utcnow().isoformat(),
            "uptime": self.get_uptime()["uptime_seconds"]
        }

    def performance_snapshot(self) -> Dict[str, Any]:
        memory = self._process.memory_info()
        return {
            "memory": {"rss": memory.rss, "vms": memory.vms},
            "cpu_percent": self._process.cpu_percent(interval=None),
            "uptime": self.get_uptime()["uptime_seconds"],
        }
