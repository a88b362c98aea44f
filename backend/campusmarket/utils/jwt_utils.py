import os
import time
import logging
from typing import Optional, Dict, Any, Tuple

import jwt

logger = logging.getLogger(__name__)


def _secret() -> str:
    return os.getenv("AUTH_JWT_SECRET") or os.getenv("SECRET_KEY") or "campusmarket-dev-jwt-secret-change-me-0001"


def _audience() -> Optional[str]:
    aud = (os.getenv("AUTH_JWT_AUDIENCE") or "").strip()
    return aud or None


def create_token(user_id: str, ttl_seconds: int = 60 * 60, audience: Optional[str] = None) -> str:
    """Mint a token shaped like the identity provider's. Dev and tests only."""
    now = int(time.time())
    payload = {
        "sub": str(user_id),
        "iat": now,
        "exp": now + ttl_seconds,
        "role": "authenticated",
    }
    aud = audience or _audience()
    if aud:
        payload["aud"] = aud
    return jwt.encode(payload, _secret(), algorithm="HS256")


def decode_token(token: str) -> Optional[Dict[str, Any]]:
    aud = _audience()
    try:
        if aud:
            return jwt.decode(token, _secret(), algorithms=["HS256"], audience=aud)
        return jwt.decode(token, _secret(), algorithms=["HS256"], options={"verify_aud": False})
    except jwt.PyJWTError as e:
        logger.info("token_rejected err=%s", type(e).__name__)
        return None


def parse_auth_header(auth_header: str) -> Tuple[Optional[str], Optional[str]]:
    if not auth_header:
        return None, None
    parts = auth_header.split()
    if len(parts) == 2 and parts[0].lower() == "bearer":
        return parts[1], "bearer"
    return None, None


def get_bearer_token(auth_header: str) -> Optional[str]:
    if not auth_header:
        return None
    token, _scheme = parse_auth_header(auth_header)
    return token


def subject_from_header(auth_header: str) -> Optional[str]:
    token = get_bearer_token(auth_header)
    if not token:
        return None
    payload = decode_token(token)
    if not payload:
        return None
    sub = str(payload.get("sub") or "").strip()
    return sub or None
