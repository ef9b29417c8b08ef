"""Liveness, readiness and health checks."""

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy import func, select, text
from sqlalchemy.ext.asyncio import AsyncSession

from momo_payments.api.dependencies import Components, DbSession
from momo_payments.models import Notification

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    """Health report for operators."""

    status: str
    timestamp: datetime
    database: str
    webhook_auth: str
    notification_worker: str
    notifications_pending: int | None
    notification_backlog: int


async def _database_ok(db: AsyncSession) -> bool:
    try:
        await db.execute(text("SELECT 1"))
    except Exception:
        logger.exception("Database health check failed")
        return False
    return True


@router.get("/health", response_model=HealthResponse)
async def health_check(db: DbSession, components: Components) -> HealthResponse:
    """Database reachability, webhook credentials and notification outbox state."""
    database_ok = await _database_ok(db)
    pending = None
    if database_ok:
        pending = await db.scalar(
            select(func.count())
            .select_from(Notification)
            .where(Notification.status == "pending")
        )

    webhook = components.config.webhook
    auth_configured = bool(webhook.secret or webhook.api_key)

    return HealthResponse(
        status="healthy" if database_ok and auth_configured else "degraded",
        timestamp=datetime.now(timezone.utc),
        database="healthy" if database_ok else "unhealthy",
        webhook_auth="configured" if auth_configured else "missing",
        notification_worker="running" if components.worker.is_running else "stopped",
        notifications_pending=pending,
        notification_backlog=components.worker.pending_signals,
    )


@router.get("/ready")
async def readiness_check(db: DbSession):
    """Ready once the database answers; callbacks cannot be recorded before that."""
    if not await _database_ok(db):
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "unavailable"},
        )
    return {"status": "ready"}


@router.get("/live")
async def liveness_check() -> dict[str, str]:
    return {"status": "alive"}
