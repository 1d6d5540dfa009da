"""Audit log entries for critical booking operations."""

import json
from typing import Any, Dict, Optional

import structlog

from .database import get_async_session
from .models import AuditLog

logger = structlog.get_logger(__name__)


async def record_audit(action: str, user_email: Optional[str] = None, details: Optional[Dict[str, Any]] = None) -> None:
    """
    Write one audit entry in its own session.

    Runs after the caller's commit, so a failure here never touches the
    caller's transaction. Call through ``run_best_effort``.
    """
    async with get_async_session() as session:
        session.add(
            AuditLog(
                action=action,
                user_email=user_email,
                details=json.dumps(details, default=str) if details else None,
            )
        )
        await session.commit()

    logger.info("Audit entry recorded", action=action)
