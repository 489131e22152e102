"""Security API: client violation reports, ban/quota status, admin review."""
from __future__ import annotations

import logging
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from src.auth import require_admin, require_user
from src.db.engine import get_session
from src.db.tables import UserRow
from src.middleware.rate_limit import get_client_ip
from src.models.security import ViolationType
from src.services import security

logger = logging.getLogger(__name__)
router = APIRouter(tags=["security"])


class ViolationReport(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    violation_type: ViolationType = Field(alias="violationType")
    description: Optional[str] = Field(default=None, max_length=1000)
    movie_id: Optional[str] = Field(default=None, alias="movieId")


@router.post("/api/v1/security/violation")
async def report_violation(
    req: ViolationReport,
    request: Request,
    user: Annotated[UserRow, Depends(require_user)],
    session: AsyncSession = Depends(get_session),
):
    """Player deterrents report here; repeated reports escalate to a temporary ban."""
    outcome = await security.log_violation(
        session,
        user.id,
        req.violation_type,
        description=req.description,
        movie_id=req.movie_id,
        ip_address=get_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return {
        "logged": True,
        "banned": outcome.banned,
        "ban": security.ban_to_dict(outcome.ban) if outcome.ban else None,
    }


@router.get("/api/v1/security/status")
async def security_status(
    user: Annotated[UserRow, Depends(require_user)],
    session: AsyncSession = Depends(get_session),
):
    ban = await security.check_user_ban(session, user.id)
    watch = await security.check_watch_time_limit(session, user.id)
    plays = await security.check_play_attempt_limit(session, user.id)
    return {
        "isBanned": ban.is_banned,
        "ban": security.ban_to_dict(ban.ban) if ban.ban else None,
        "watchTime": {"allowed": watch.allowed, "remainingSeconds": watch.remaining},
        "playAttempts": {"allowed": plays.allowed, "remaining": plays.remaining},
    }


# ── Admin ────────────────────────────────────────────────────────────────────

@router.get("/api/v1/admin/security/violations", dependencies=[Depends(require_admin)])
async def admin_list_violations(
    user_id: Optional[str] = Query(None, alias="userId"),
    limit: int = Query(100, ge=1, le=500),
    session: AsyncSession = Depends(get_session),
):
    rows = await security.list_violations(session, user_id=user_id, limit=limit)
    return {"violations": [security.violation_to_dict(v) for v in rows]}


@router.get("/api/v1/admin/security/bans", dependencies=[Depends(require_admin)])
async def admin_list_bans(
    limit: int = Query(100, ge=1, le=500),
    session: AsyncSession = Depends(get_session),
):
    rows = await security.list_bans(session, limit=limit)
    return {"bans": [security.ban_to_dict(b) for b in rows]}


@router.post("/api/v1/admin/security/users/{user_id}/unban", dependencies=[Depends(require_admin)])
async def admin_unban_user(user_id: str, session: AsyncSession = Depends(get_session)):
    lifted = await security.unban_user(session, user_id)
    return {"userId": user_id, "bansLifted": lifted}
