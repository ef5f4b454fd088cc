"""
User endpoints.

WHAT: Public settlement counters and the caller's notification opt-outs
WHY: Profiles show how many books someone gave, received and traded;
     people choose which notices reach them
HOW: Read-only view over the settlement ledger; preferences via the service
"""

from fastapi import APIRouter

from ....models.api_schemas import (
    NotificationPreferencesRequest,
    NotificationPreferencesResponse,
    UserStatsResponse,
)
from ....services.negotiation import NegotiationService
from ..deps import CurrentUser, Identity, Service

router = APIRouter()


@router.get("/users/{user_id}/stats", response_model=UserStatsResponse)
def get_user_stats(user_id: str, service: NegotiationService = Service):
    return UserStatsResponse.model_validate(service.get_user_stats(user_id))


@router.get("/users/{user_id}/notification-preferences", response_model=NotificationPreferencesResponse)
def get_notification_preferences(
    user_id: str,
    user: Identity = CurrentUser,
    service: NegotiationService = Service,
):
    preferences = service.get_notification_preferences(user.user_id, user_id)
    return NotificationPreferencesResponse(user_id=user_id, preferences=preferences)


@router.put("/users/{user_id}/notification-preferences", response_model=NotificationPreferencesResponse)
def update_notification_preferences(
    user_id: str,
    request: NotificationPreferencesRequest,
    user: Identity = CurrentUser,
    service: NegotiationService = Service,
):
    """Switch notice kinds on or off for the caller."""
    preferences = service.update_notification_preferences(user.user_id, user_id, request.preferences)
    return NotificationPreferencesResponse(user_id=user_id, preferences=preferences)
