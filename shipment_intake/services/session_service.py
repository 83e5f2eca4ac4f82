from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import jwt

from shipment_intake.config import settings


@dataclass(frozen=True)
class Actor:
    actor_id: str
    role: str = "staff"


def create_access_token(actor_id: str, role: str = "staff", hours: int = 72) -> str:
    payload = {
        "sub": actor_id,
        "role": role,
        "exp": datetime.now(timezone.utc) + timedelta(hours=hours),
    }
    return jwt.encode(payload, settings.SECRET_KEY, algorithm="HS256")


def decode_token(token: str) -> dict | None:
    try:
        return jwt.decode(token, settings.SECRET_KEY, algorithms=["HS256"])
    except (jwt.ExpiredSignatureError, jwt.InvalidTokenError):
        return None


def actor_from_token(token: str | None) -> Actor | None:
    """Resolve a session token into the acting user, or None when missing or invalid."""
    if not token:
        return None
    payload = decode_token(token)
    if not payload or not payload.get("sub"):
        return None
    return Actor(actor_id=str(payload["sub"]), role=str(payload.get("role") or "staff"))
