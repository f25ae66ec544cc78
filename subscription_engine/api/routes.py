from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from subscription_engine.business.subscription.api import router as subscriptions_router
from subscription_engine.core.auth import AuthUser, get_current_user
from subscription_engine.core.config import get_settings
from subscription_engine.core.database import get_db
from subscription_engine.metrics import generate_metrics_payload, metrics_content_type

METRICS_READ_ROLE = "system.metrics.read"

logger = logging.getLogger("subscription_engine.api")

router = APIRouter()
router.include_router(subscriptions_router)


def require_metrics_reader(user: AuthUser = Depends(get_current_user)) -> AuthUser:
    # Disabled metrics answer 404 before any permission check so the endpoint is not discoverable.
    if not get_settings().metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    if METRICS_READ_ROLE not in user.roles:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {METRICS_READ_ROLE}")
    return user


@router.get("/health", tags=["system"])
def health(db: Session = Depends(get_db)) -> dict[str, object]:
    """Liveness plus the state of the two things every lifecycle operation needs."""
    settings = get_settings()
    try:
        db.execute(text("SELECT 1"))
        database = "ok"
    except SQLAlchemyError as exc:
        logger.warning("health.database_unavailable", extra={"error": str(exc)})
        database = "unavailable"

    return {
        "status": "ok" if database == "ok" else "degraded",
        "service": settings.app_name,
        "environment": settings.app_env,
        "database": database,
        "gateway": {
            "configured": bool(settings.razorpay_key_id and settings.razorpay_key_secret),
            "webhookSignatureRequired": bool(settings.razorpay_webhook_secret),
        },
    }


@router.get("/metrics", tags=["system"])
def metrics(_: AuthUser = Depends(require_metrics_reader)) -> Response:
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
