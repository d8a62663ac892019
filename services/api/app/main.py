import logging
import os
from contextlib import asynccontextmanager
from datetime import date, datetime, timezone
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query
from fastapi.responses import JSONResponse
from kombu.exceptions import OperationalError

from services.shared.caching import get_cached_summary, get_redis, set_cached_summary
from services.shared.config import (
    HEALTH_CHECK_BROKER,
    HEALTH_CHECK_BROKER_TIMEOUT_SECONDS,
    LOG_LEVEL,
    SERVICE_VERSION,
    validate_config,
)
from services.shared.database import ping_database, run_migrations_if_needed
from services.shared.metric_definitions import METRIC_DEFINITIONS, get_metric_description
from services.shared.notifications import get_celery_client
from services.shared.persistence.gateway import PersistenceFailure, PersistenceGateway
from services.shared.persistence.sql import SqlPersistenceGateway
from services.shared.pipeline import sync_user_activity
from services.shared.scoring import level_progress, next_milestone

from .schemas import DailyAggregatesResponse, SummaryResponse, SyncRequest, SyncResponse
from .security import verify_api_auth_token

logger = logging.getLogger("api")

# HTTP status for each pipeline error reason
_ERROR_STATUS_CODES = {
    "user_not_found": 404,
    "token_invalid": 403,
    "provider": 502,
    "persistence": 500,
    "internal": 500,
}

_gateway: Optional[PersistenceGateway] = None


def get_gateway() -> PersistenceGateway:
    """
    FastAPI dependency returning the process-wide persistence gateway
    """
    global _gateway
    if _gateway is None:
        _gateway = SqlPersistenceGateway()
    return _gateway


def _to_iso8601_z(dt: Optional[datetime]) -> Optional[str]:
    """
    Render datetime as ISO-8601 with a trailing Z

    Args:
        dt (datetime): Datetime or None

    Returns:
        str or None
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _summary_payload(row: Dict[str, Any]) -> Dict[str, Any]:
    xp = int(row.get("xp") or 0)
    return {
        "user_id": int(row["github_user_id"]),
        "github_login": row.get("github_login") or "",
        "last_synced_at": _to_iso8601_z(row.get("last_synced_at")),
        "auto_sync": bool(row.get("auto_sync", True)),
        "metrics": {
            name: {"value": int(row.get(name) or 0), "description": get_metric_description(name)}
            for name in METRIC_DEFINITIONS
        },
        "xp": xp,
        "level": int(row.get("level") or 1),
        "level_title": row.get("level_title") or "",
        "level_progress": level_progress(xp),
        "next_milestone": next_milestone(xp),
    }


@asynccontextmanager
async def lifespan(_app: FastAPI):
    logging.basicConfig(level=LOG_LEVEL)
    validate_config()
    run_migrations_if_needed()
    yield


app = FastAPI(
    title="DevFlow Activity Sync Service",
    version=SERVICE_VERSION,
    lifespan=lifespan,
)


@app.get("/health")
def health() -> JSONResponse:
    """
    Health check: verifies DB and Redis connectivity, optionally the broker

    Returns:
        JSONResponse 200 when healthy, 503 when degraded
    """
    database_ok = False
    redis_ok = False
    broker_ok = None
    broker_workers = None

    try:
        database_ok = ping_database()
    except Exception as exc:
        logger.error("health: database check failed error=%s msg=%s", type(exc).__name__, str(exc))

    try:
        redis_ok = bool(get_redis().ping())
    except Exception as exc:
        logger.error("health: redis check failed error=%s msg=%s", type(exc).__name__, str(exc))

    if HEALTH_CHECK_BROKER:
        try:
            replies = get_celery_client().control.ping(timeout=HEALTH_CHECK_BROKER_TIMEOUT_SECONDS)
            broker_ok = True
            broker_workers = len(replies or [])
        except (OperationalError, TimeoutError, OSError, ConnectionError) as exc:
            logger.error("health: broker ping failed error=%s msg=%s", type(exc).__name__, str(exc))
            broker_ok = False

    healthy = bool(database_ok and redis_ok and broker_ok is not False)
    payload = {
        "status": "healthy" if healthy else "degraded",
        "timestamp": _to_iso8601_z(datetime.now(timezone.utc)),
        "database": database_ok,
        "redis": redis_ok,
    }
    if broker_ok is not None:
        payload["broker"] = broker_ok
        payload["broker_workers"] = broker_workers

    return JSONResponse(status_code=200 if healthy else 503, content=payload)


@app.get("/version")
def version():
    return {"version": app.version}


@app.post("/api/v1/sync", responses={200: {"model": SyncResponse}})
def sync_activity(
    body: SyncRequest,
    x_github_token: Optional[str] = Header(default=None, alias="X-GitHub-Token"),
    _=Depends(verify_api_auth_token),
    gateway: PersistenceGateway = Depends(get_gateway),
) -> JSONResponse:
    """
    Run a synchronous activity sync for one user

    Args:
        body (SyncRequest): user_id and optional github_token
        x_github_token (str): Token header, preferred over the body field

    Returns:
        200 with stats, 429 with Retry-After when rate limited, 4xx/5xx on error
    """
    token = x_github_token or (body.github_token.get_secret_value() if body.github_token else "")
    if not token:
        raise HTTPException(status_code=400, detail="github_token is required")

    result = sync_user_activity(body.user_id, token, gateway)
    status = result.get("status")

    if status == "ok":
        return JSONResponse(status_code=200, content=result)

    if status == "rate_limited":
        minutes = int(result["retry_after_minutes"])
        return JSONResponse(
            status_code=429,
            content={"status": "rate_limited", "user_id": body.user_id, "retry_after_minutes": minutes},
            headers={"Retry-After": str(minutes * 60)},
        )

    status_code = _ERROR_STATUS_CODES.get(result.get("reason"), 500)
    logger.warning(
        "sync: returning error status_code=%s reason=%s",
        status_code,
        result.get("reason"),
        extra={"user_id": body.user_id},
    )
    return JSONResponse(
        status_code=status_code,
        content={"status": "error", "user_id": body.user_id, "error": result.get("error")},
    )


@app.get("/api/v1/users/{user_id}/summary", response_model=SummaryResponse)
def get_user_summary(
    user_id: int,
    _=Depends(verify_api_auth_token),
    gateway: PersistenceGateway = Depends(get_gateway),
) -> Dict[str, Any]:
    """
    Retrieve cached counters, streaks, score and progression for a user

    Args:
        user_id (int): GitHub user id

    Returns:
        SummaryResponse payload
    """
    cached = get_cached_summary(user_id)
    if cached:
        return cached

    try:
        row = gateway.get_user_summary(user_id)
    except PersistenceFailure as exc:
        logger.exception("summary: read failed", extra={"user_id": user_id})
        raise HTTPException(status_code=500, detail="Failed to read summary") from exc

    if row is None:
        raise HTTPException(status_code=404, detail="User not found")

    payload = _summary_payload(row)
    set_cached_summary(user_id, payload)
    return payload


@app.get("/api/v1/users/{user_id}/daily", response_model=DailyAggregatesResponse)
def get_daily_aggregates(
    user_id: int,
    start: Optional[date] = Query(default=None),
    end: Optional[date] = Query(default=None),
    _=Depends(verify_api_auth_token),
    gateway: PersistenceGateway = Depends(get_gateway),
) -> Dict[str, Any]:
    """
    List daily aggregate rows for a user, inclusive of start and end

    Args:
        user_id (int): GitHub user id
        start (date): First day (YYYY-MM-DD)
        end (date): Last day (YYYY-MM-DD)

    Returns:
        DailyAggregatesResponse payload
    """
    if start is not None and end is not None and start > end:
        raise HTTPException(status_code=400, detail="start must be on or before end")

    try:
        if gateway.get_user_summary(user_id) is None:
            raise HTTPException(status_code=404, detail="User not found")
        rows = gateway.list_daily_aggregates(user_id, start=start, end=end)
    except PersistenceFailure as exc:
        logger.exception("daily: read failed", extra={"user_id": user_id})
        raise HTTPException(status_code=500, detail="Failed to read daily aggregates") from exc

    return {"user_id": user_id, "start": start, "end": end, "days": rows}


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", "8000"))
    host = str(os.getenv("API_BIND_HOST", "0.0.0.0")).strip() or "0.0.0.0"

    uvicorn.run(app, host=host, port=port)
