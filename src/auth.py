"""JWT bearer auth for ReelVault: token verification and FastAPI dependencies.

Account creation and password handling live in the identity service; this
module only mints and checks the HS256 access tokens the API accepts.
"""
from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.db.engine import get_session
from src.db.tables import UserRow
from config.settings import settings

# ---- JWT (minimal, no PyJWT dependency) ----

_JWT_ALGO = "HS256"
_ACCESS_TTL = 3600 * 24 * 7  # 7 days


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode()


def _b64url_decode(s: str) -> bytes:
    s += "=" * (-len(s) % 4)
    return base64.urlsafe_b64decode(s)


def _sign(payload: dict) -> str:
    header = _b64url(json.dumps({"alg": _JWT_ALGO, "typ": "JWT"}).encode())
    body = _b64url(json.dumps(payload).encode())
    sig_input = f"{header}.{body}".encode()
    sig = hmac.new(settings.JWT_SECRET.encode(), sig_input, hashlib.sha256).digest()
    return f"{header}.{body}.{_b64url(sig)}"


def _verify(token: str) -> Optional[dict]:
    parts = token.split(".")
    if len(parts) != 3:
        return None
    try:
        sig_input = f"{parts[0]}.{parts[1]}".encode()
        expected = hmac.new(settings.JWT_SECRET.encode(), sig_input, hashlib.sha256).digest()
        if not hmac.compare_digest(expected, _b64url_decode(parts[2])):
            return None
        payload = json.loads(_b64url_decode(parts[1]))
    except ValueError:
        return None
    if not isinstance(payload, dict) or payload.get("exp", 0) < time.time():
        return None
    return payload


def create_access_token(user_id: str, ttl: int = _ACCESS_TTL) -> str:
    now = int(time.time())
    return _sign({"sub": user_id, "iat": now, "exp": now + ttl, "type": "access", "jti": uuid.uuid4().hex[:8]})


# ---- FastAPI dependencies ----

_bearer = HTTPBearer(auto_error=False)


async def get_current_user(
    creds: Optional[HTTPAuthorizationCredentials] = Depends(_bearer),
    session: AsyncSession = Depends(get_session),
) -> Optional[UserRow]:
    if not creds:
        return None
    payload = _verify(creds.credentials)
    if not payload or payload.get("type") != "access":
        return None
    result = await session.execute(select(UserRow).where(UserRow.id == payload["sub"]))
    return result.scalar_one_or_none()


async def require_user(user: Optional[UserRow] = Depends(get_current_user)) -> UserRow:
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required")
    return user


def require_admin(x_admin_key: str = Header(None)) -> None:
    """Verify admin API key (timing-safe)."""
    expected = settings.ADMIN_API_KEY
    if not expected:
        raise HTTPException(503, "Admin endpoints disabled")
    if not x_admin_key or not hmac.compare_digest(x_admin_key.encode(), expected.encode()):
        raise HTTPException(403, "Invalid admin key")
