"""Video access: entitlement gate, signed proxy tokens, and the obfuscated player page.

The real embed URL never leaves the server in plaintext: `/videos/{id}/stream`
hands out `/v/play/<token>`, and the player page rebuilds the iframe src
client-side from base64 chunks.

Token format (base64url, unpadded):
    "<user_id>:<movie_id>:<expiry epoch s>:<trusted 0|1>:<hex HMAC-SHA256>"
"""
from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import logging
import re
import secrets
import time
from dataclasses import dataclass
from urllib.parse import parse_qs, urlparse

from sqlalchemy.ext.asyncio import AsyncSession

from src.db.tables import MovieRow
from src.services.entitlements import get_entitlement
from src.services.errors import (
    MalformedTokenError,
    NotEntitledError,
    TokenExpiredError,
    TokenSignatureError,
)

logger = logging.getLogger(__name__)

TOKEN_TTL_SECONDS = 2 * 3600

_VIMEO_PARAMS = "autoplay=1&badge=0&title=0&byline=0&portrait=0&controls=1&dnt=1"
_VIMEO_ID = re.compile(r"vimeo\.com/(?:video/)?(\d+)")
_YOUTU_BE_ID = re.compile(r"youtu\.be/([A-Za-z0-9_-]+)")


def _now() -> int:
    return int(time.time())


@dataclass(frozen=True)
class IssuedToken:
    token: str
    expires_at: int


@dataclass(frozen=True)
class VideoGrant:
    user_id: str
    movie_id: str
    expires_at: int
    trusted: bool


# ── Entitlement ──────────────────────────────────────────────────────────────

async def check_video_access(session: AsyncSession, user_id: str, movie: MovieRow) -> str:
    """Return the entitlement reason or raise NotEntitledError."""
    reason = await get_entitlement(session, user_id, movie)
    if reason is None:
        raise NotEntitledError()
    return reason


# ── Tokens ───────────────────────────────────────────────────────────────────

def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode()


def _sign(payload: str, secret: str) -> str:
    return hmac.new(secret.encode(), payload.encode(), hashlib.sha256).hexdigest()


def issue_video_token(
    user_id: str,
    movie_id: str,
    trusted: bool,
    secret: str,
    ttl: int = TOKEN_TTL_SECONDS,
) -> IssuedToken:
    expires_at = _now() + ttl
    payload = f"{user_id}:{movie_id}:{expires_at}:{1 if trusted else 0}"
    token = _b64url(f"{payload}:{_sign(payload, secret)}".encode())
    return IssuedToken(token=token, expires_at=expires_at)


def resolve_video_token(token: str, secret: str) -> VideoGrant:
    """Decode and verify a proxy token. Every failure is a 403, never a fallback."""
    try:
        raw = base64.urlsafe_b64decode(token + "=" * (-len(token) % 4))
        decoded = raw.decode("utf-8")
    except (binascii.Error, UnicodeDecodeError, ValueError):
        raise MalformedTokenError()
    # The decoder tolerates stray/extra bits; only the canonical encoding is accepted
    if _b64url(raw) != token:
        raise MalformedTokenError()

    parts = decoded.split(":")
    if len(parts) != 5:
        raise MalformedTokenError()
    user_id, movie_id, expiry_text, trusted_text, signature = parts

    try:
        expires_at = int(expiry_text)
    except ValueError:
        raise MalformedTokenError()

    if _now() > expires_at:
        raise TokenExpiredError()

    expected = _sign(f"{user_id}:{movie_id}:{expiry_text}:{trusted_text}", secret)
    if not hmac.compare_digest(expected.encode(), signature.encode()):
        logger.warning(f"Forged video token for movie {movie_id}")
        raise TokenSignatureError()

    return VideoGrant(
        user_id=user_id,
        movie_id=movie_id,
        expires_at=expires_at,
        trusted=trusted_text == "1",
    )


# ── Player ───────────────────────────────────────────────────────────────────

def normalize_embed_url(url: str) -> str:
    """Rewrite provider URLs into autoplaying embed URLs."""
    if "vimeo.com" in url:
        if "player.vimeo.com" not in url:
            match = _VIMEO_ID.search(url)
            if match:
                return f"https://player.vimeo.com/video/{match.group(1)}?{_VIMEO_PARAMS}"
            return url
        if "?" not in url:
            return f"{url}?{_VIMEO_PARAMS}"
        return url

    if "youtube.com" in url or "youtu.be" in url:
        if "/embed/" in url:
            return url
        video_id = None
        parsed = urlparse(url)
        if "youtube.com" in parsed.netloc:
            video_id = (parse_qs(parsed.query).get("v") or [None])[0]
        else:
            match = _YOUTU_BE_ID.search(url)
            video_id = match.group(1) if match else None
        if video_id:
            return f"https://www.youtube.com/embed/{video_id}?autoplay=1&rel=0"
        return url

    if "autoplay" not in url:
        return url + ("&" if "?" in url else "?") + "autoplay=1"
    return url


def _var() -> str:
    return "_" + secrets.token_hex(3)


def render_player_html(embed_url: str, trusted: bool = False) -> str:
    """Minimal full-screen player. The iframe src is assembled in JS from base64 chunks."""
    encoded = base64.b64encode(embed_url.encode()).decode()
    chunks = json.dumps([encoded[i:i + 10] for i in range(0, len(encoded), 10)])
    a, b, c, d = _var(), _var(), _var(), _var()

    # Trusted users keep their keyboard
    key_guard = "" if trusted else """
  document.addEventListener('keydown',function(e){
    if((e.ctrlKey||e.metaKey)&&['u','s','i','j','c'].indexOf(e.key)>=0){e.preventDefault()}
    if(e.key==='F12'){e.preventDefault()}
  });"""

    return f"""<!DOCTYPE html>
<html><head>
<meta charset="utf-8">
<meta name="viewport" content="width=device-width,initial-scale=1">
<title>Stream</title>
<style>
*{{margin:0;padding:0;box-sizing:border-box}}
html,body{{width:100%;height:100%;background:#000;overflow:hidden}}
#p{{position:absolute;top:0;left:0;width:100%;height:100%}}
#v{{position:absolute;top:0;left:0;width:100%;height:100%;border:none;z-index:1}}
.b{{position:absolute;z-index:10;background:transparent}}
.tl{{top:0;left:0;width:200px;height:80px}}
.tr{{top:0;right:0;width:200px;height:80px}}
.bl{{bottom:0;left:0;width:200px;height:80px}}
.br{{bottom:0;right:0;width:200px;height:80px}}
</style>
</head><body>
<div id="p">
  <div class="b tl"></div><div class="b tr"></div>
  <div class="b bl"></div><div class="b br"></div>
</div>
<script>
(function(){{
  var {a}={chunks};
  var {b}=atob({a}.join(''));
  var {c}=document.getElementById('p');
  var {d}=document.createElement('iframe');
  {d}.id='v';
  {d}.src={b};
  {d}.allow='autoplay;encrypted-media;picture-in-picture';
  {d}.allowFullscreen=true;
  {d}.setAttribute('sandbox','allow-scripts allow-same-origin allow-presentation');
  {c}.insertBefore({d},{c}.firstChild);
  document.querySelectorAll('.b').forEach(function(el){{
    el.addEventListener('click',function(e){{e.preventDefault();e.stopPropagation();}});
  }});
  window.open=function(){{return null;}};
  document.addEventListener('contextmenu',function(e){{e.preventDefault()}});
  document.addEventListener('dragstart',function(e){{e.preventDefault()}});{key_guard}
}})();
</script>
</body></html>"""
