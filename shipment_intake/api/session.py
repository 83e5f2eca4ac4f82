from fastapi import Cookie, Depends, Header, HTTPException

from shipment_intake.config import settings
from shipment_intake.context import RequestContext
from shipment_intake.services import session_service
from shipment_intake.services.session_service import Actor


def get_current_actor(
    authorization: str | None = Header(default=None),
    token: str | None = Cookie(default=None, alias="token"),
) -> Actor:
    """Dependency: extract the acting user from a bearer header or the session cookie."""
    if authorization and authorization.lower().startswith("bearer "):
        token = authorization[7:].strip()
    if not token:
        raise HTTPException(401, "Not authenticated")
    actor = session_service.actor_from_token(token)
    if actor is None:
        raise HTTPException(401, "Invalid or expired token")
    return actor


def get_context(
    actor: Actor = Depends(get_current_actor),
    x_correlation_id: str | None = Header(default=None),
) -> RequestContext:
    kwargs = {"correlation_id": x_correlation_id} if x_correlation_id else {}
    ctx = RequestContext(actor_id=actor.actor_id, role=actor.role, **kwargs)
    return ctx.with_timeout(settings.DOCUMENT_TIMEOUT_SECONDS)
