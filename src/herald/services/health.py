"""Delivery health aggregation for operators and load balancers."""

from __future__ import annotations

import logging
import math
import time
from dataclasses import asdict, dataclass, field
from datetime import timedelta
from typing import Any

from sqlalchemy import case, func, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from herald.core.settings import settings
from herald.db.time import utcnow
from herald.models import RequestMetric
from herald.services.http import DeliveryOutcome
from herald.services.queue import DeliveryQueue

logger = logging.getLogger(__name__)

STATUS_HEALTHY = "healthy"
STATUS_DEGRADED = "degraded"
STATUS_UNHEALTHY = "unhealthy"

# Error rates over a handful of requests are noise.
MIN_REQUESTS_FOR_ERROR_RATE = 10
BUSIEST_HOSTS_LIMIT = 10


@dataclass
class HealthSnapshot:
    status: str
    database_ok: bool
    database_latency_ms: float | None
    queue: dict[str, Any]
    pending_total: int
    window_minutes: int
    requests: int
    failures: int
    error_rate: float
    avg_latency_ms: float | None
    p95_latency_ms: float | None
    busiest_hosts: list[dict[str, Any]] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


class HealthMonitor:
    """Records request outcomes and summarises recent delivery health."""

    def __init__(self, db: Session) -> None:
        self.db = db

    def record(
        self,
        host: str,
        endpoint: str,
        success: bool,
        latency_ms: float,
        status_code: int | None = None,
        error: str | None = None,
    ) -> None:
        """Persist one request metric. Storage failures are logged, not raised."""
        try:
            self.db.add(
                RequestMetric(
                    remote_host=host,
                    endpoint=endpoint,
                    success=success,
                    latency_ms=latency_ms,
                    status_code=status_code,
                    error=error[:1000] if error else None,
                )
            )
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.error("Failed to record request metric for %s: %s", host, exc)

    def record_outcome(self, outcome: DeliveryOutcome) -> None:
        self.record(
            outcome.host,
            outcome.endpoint,
            outcome.success,
            outcome.latency_ms,
            outcome.status_code,
            outcome.error,
        )

    def _database_latency(self) -> float | None:
        start = time.perf_counter()
        try:
            self.db.execute(text("SELECT 1"))
        except SQLAlchemyError as exc:
            logger.error("Database health check failed: %s", exc)
            return None
        return (time.perf_counter() - start) * 1000

    def host_activity(self, window_minutes: int | None = None) -> list[dict[str, Any]]:
        """Return request and failure counts per remote host inside the window."""
        since = utcnow() - timedelta(minutes=window_minutes or settings.health_window_minutes)
        failures = func.sum(case((RequestMetric.success.is_(False), 1), else_=0))
        rows = (
            self.db.query(RequestMetric.remote_host, func.count(RequestMetric.id), failures)
            .filter(RequestMetric.recorded_at >= since)
            .group_by(RequestMetric.remote_host)
            .order_by(func.count(RequestMetric.id).desc())
            .limit(BUSIEST_HOSTS_LIMIT)
            .all()
        )
        return [
            {"host": host, "requests": int(count), "failures": int(failed or 0)}
            for host, count, failed in rows
        ]

    def snapshot(self, window_minutes: int | None = None) -> HealthSnapshot:
        """Summarise queue depth, database latency and recent delivery outcomes."""
        window = window_minutes or settings.health_window_minutes
        warnings: list[str] = []

        db_latency = self._database_latency()
        database_ok = db_latency is not None
        if db_latency is not None and db_latency >= settings.health_db_latency_warn_ms:
            warnings.append(f"database latency {db_latency:.0f}ms")

        queue: dict[str, Any] = {}
        pending_total = 0
        requests = failures = 0
        latencies: list[float] = []
        busiest: list[dict[str, Any]] = []
        if database_ok:
            queue = DeliveryQueue(self.db).depth()
            pending_total = sum(kind["pending"] for kind in queue.values())

            since = utcnow() - timedelta(minutes=window)
            rows = (
                self.db.query(RequestMetric.success, RequestMetric.latency_ms)
                .filter(RequestMetric.recorded_at >= since)
                .all()
            )
            requests = len(rows)
            failures = sum(1 for row in rows if not row.success)
            latencies = sorted(row.latency_ms for row in rows)
            busiest = self.host_activity(window)

        error_rate = failures / requests if requests else 0.0
        avg_latency = sum(latencies) / len(latencies) if latencies else None
        p95_latency = latencies[max(0, math.ceil(len(latencies) * 0.95) - 1)] if latencies else None

        if pending_total > settings.health_queue_fail:
            warnings.append(f"queue depth {pending_total} above {settings.health_queue_fail}")
        elif pending_total > settings.health_queue_warn:
            warnings.append(f"queue depth {pending_total} above {settings.health_queue_warn}")
        if requests >= MIN_REQUESTS_FOR_ERROR_RATE and error_rate > settings.health_error_rate_warn:
            warnings.append(f"error rate {error_rate:.0%}")

        if not database_ok or pending_total > settings.health_queue_fail:
            status = STATUS_UNHEALTHY
        elif warnings:
            status = STATUS_DEGRADED
        else:
            status = STATUS_HEALTHY

        return HealthSnapshot(
            status=status,
            database_ok=database_ok,
            database_latency_ms=db_latency,
            queue=queue,
            pending_total=pending_total,
            window_minutes=window,
            requests=requests,
            failures=failures,
            error_rate=error_rate,
            avg_latency_ms=avg_latency,
            p95_latency_ms=p95_latency,
            busiest_hosts=busiest,
            warnings=warnings,
        )
