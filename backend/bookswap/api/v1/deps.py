"""
Request-scoped dependencies.

WHAT: Caller identity and the negotiation service for endpoints
WHY: Authentication lives upstream; the engine only needs a user id and role
HOW: FastAPI Header dependencies; the service is held on app.state
"""

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header, Request

from ...services.negotiation import NegotiationService
from ...utils.exceptions import ForbiddenError


@dataclass
class Identity:
    """Authenticated caller."""
    user_id: str
    role: Optional[str] = None


def get_identity(
    x_user_id: Optional[str] = Header(default=None),
    x_user_role: Optional[str] = Header(default=None),
) -> Identity:
    """Caller identity from the X-User-Id / X-User-Role headers."""
    if not x_user_id or not x_user_id.strip():
        raise ForbiddenError("X-User-Id header is required")
    return Identity(user_id=x_user_id.strip(), role=(x_user_role or "").strip().lower() or None)


def get_service(request: Request) -> NegotiationService:
    return request.app.state.service


CurrentUser = Depends(get_identity)
Service = Depends(get_service)
