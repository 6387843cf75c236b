"""Operator endpoints: health, queue, delivery passes, blocklist and actor cache."""

from __future__ import annotations

from dataclasses import asdict
from typing import Annotated, Any

from fastapi import APIRouter, HTTPException, Query, status
from fastapi.responses import JSONResponse

from herald.api.v1.dependencies import HttpClientDep, OperatorDep, SessionDep
from herald.core.settings import settings
from herald.db.session import borrowed_session
from herald.schemas.system import BlockedDomainResponse, BlockRequest, PassReportResponse
from herald.services.actors import ActorCache, ActorDirectory
from herald.services.blocklist import Blocklist
from herald.services.coordinator import DeliveryCoordinator
from herald.services.health import STATUS_UNHEALTHY, HealthMonitor
from herald.services.queue import DeliveryQueue

router = APIRouter(prefix="/system", tags=["system"])


@router.get("/health")
def delivery_health(
    db: SessionDep,
    window_minutes: Annotated[int | None, Query(ge=1, le=1440)] = None,
) -> JSONResponse:
    """Return the delivery health snapshot; 503 when unhealthy."""
    snapshot = HealthMonitor(db).snapshot(window_minutes)
    code = (
        status.HTTP_503_SERVICE_UNAVAILABLE
        if snapshot.status == STATUS_UNHEALTHY
        else status.HTTP_200_OK
    )
    return JSONResponse(snapshot.as_dict(), status_code=code)


@router.get("/config")
def delivery_config(_operator: OperatorDep) -> dict[str, Any]:
    """Return the delivery tunables in effect. Secrets are excluded."""
    return {
        "partitions": settings.partition_count,
        "claim_limit": settings.claim_limit,
        "fanout_batch_size": settings.fanout_batch_size,
        "batch_failure_threshold": settings.batch_failure_threshold,
        "delivery_concurrency": settings.delivery_concurrency,
        "retry": {
            "base_seconds": settings.retry_base_seconds,
            "cap_seconds": settings.retry_cap_seconds,
        },
        "request_timeout_seconds": settings.request_timeout_seconds,
        "actor_cache_ttl_seconds": settings.actor_cache_ttl_seconds,
        "worker_enabled": settings.worker_enabled,
    }


@router.get("/queue")
def queue_depth(db: SessionDep, _operator: OperatorDep) -> dict[str, Any]:
    return DeliveryQueue(db).depth()


@router.post("/delivery/run", response_model=PassReportResponse)
async def run_delivery_pass(
    db: SessionDep,
    http: HttpClientDep,
    _operator: OperatorDep,
    partition: Annotated[int | None, Query(ge=0)] = None,
) -> PassReportResponse:
    """Run a delivery pass now, for one partition or all of them."""
    if partition is not None and partition >= settings.partition_count:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"partition must be below {settings.partition_count}",
        )
    # Passes share the request session, so they cannot overlap.
    coordinator = DeliveryCoordinator(
        http, session_factory=lambda: borrowed_session(db), parallel=False
    )
    report = await coordinator.run_once(partition)
    return PassReportResponse(**asdict(report))


@router.get("/blocklist", response_model=list[BlockedDomainResponse])
def list_blocked_domains(db: SessionDep, _operator: OperatorDep) -> list[BlockedDomainResponse]:
    blocklist = Blocklist(db)
    rows = [BlockedDomainResponse.model_validate(entry) for entry in blocklist.entries()]
    seeded = {row.host for row in rows}
    rows.extend(
        BlockedDomainResponse(host=host, status="blocked", reason="configuration")
        for host in sorted(blocklist.seed - seeded)
    )
    return rows


@router.put("/blocklist/{host}", response_model=BlockedDomainResponse)
def block_domain(
    host: str,
    db: SessionDep,
    _operator: OperatorDep,
    payload: BlockRequest | None = None,
) -> BlockedDomainResponse:
    entry = Blocklist(db).block(host, payload.reason if payload else None)
    return BlockedDomainResponse.model_validate(entry)


@router.delete("/blocklist/{host}", response_model=BlockedDomainResponse)
def allow_domain(host: str, db: SessionDep, _operator: OperatorDep) -> BlockedDomainResponse:
    entry = Blocklist(db).allow(host)
    if entry is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Domain not listed")
    return BlockedDomainResponse.model_validate(entry)


@router.get("/actor-cache")
def actor_cache_stats(db: SessionDep, _operator: OperatorDep) -> dict[str, int]:
    return ActorCache(db).stats()


@router.post("/actor-cache/purge")
def purge_actor_cache(db: SessionDep, _operator: OperatorDep) -> dict[str, int]:
    """Delete expired cache entries."""
    return {"purged": ActorCache(db).purge_expired()}


@router.post("/actor-cache/prewarm")
async def prewarm_actor_cache(
    db: SessionDep,
    http: HttpClientDep,
    _operator: OperatorDep,
    limit: Annotated[int | None, Query(ge=1, le=500)] = None,
) -> dict[str, int]:
    """Refetch the most requested cache entries."""
    return {"refreshed": await ActorDirectory(db, http).prewarm(limit)}


@router.delete("/actor-cache", status_code=status.HTTP_204_NO_CONTENT)
def invalidate_actor(
    db: SessionDep,
    _operator: OperatorDep,
    actor_url: Annotated[str, Query(min_length=1)],
) -> None:
    if not ActorCache(db).invalidate(actor_url):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Actor not cached")
