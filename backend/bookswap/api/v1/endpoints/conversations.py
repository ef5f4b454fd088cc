"""
Conversation and negotiation endpoints.

WHAT: Open conversations, exchange messages, drive proposals to settlement
WHY: Every state-machine operation is reachable over HTTP
HOW: FastAPI router delegating to NegotiationService; a lost claim on accept
     returns 409 with the recovered conversation in the body
"""

from typing import List, Optional

from fastapi import APIRouter, Response, status
from fastapi.responses import JSONResponse

from ....models.api_schemas import (
    AcceptRequest,
    ConversationDetailResponse,
    ConversationResponse,
    MessageResponse,
    NegotiationResponse,
    OpenConversationRequest,
    ProposeRequest,
    ReasonRequest,
    SendMessageRequest,
)
from ....services.negotiation import NegotiationService
from ....utils.logger import get_logger
from ..deps import CurrentUser, Identity, Service

logger = get_logger(__name__)

router = APIRouter()


@router.post("/conversations", response_model=NegotiationResponse)
def open_conversation(
    request: OpenConversationRequest,
    response: Response,
    user: Identity = CurrentUser,
    service: NegotiationService = Service,
):
    """
    Express interest in a listing.

    Returns 201 when a conversation was created, 200 when the existing one is reused.
    """
    result = service.open_conversation(user.user_id, request.listing_id, request.message)
    response.status_code = status.HTTP_201_CREATED if result.created else status.HTTP_200_OK
    return NegotiationResponse.from_result(result)


@router.get("/conversations", response_model=List[ConversationResponse])
def list_conversations(user: Identity = CurrentUser, service: NegotiationService = Service):
    return [ConversationResponse.model_validate(c) for c in service.list_conversations(user.user_id)]


@router.get("/conversations/{conversation_id}", response_model=ConversationDetailResponse)
def get_conversation(
    conversation_id: str,
    user: Identity = CurrentUser,
    service: NegotiationService = Service,
):
    conversation = service.get_conversation(user.user_id, conversation_id)
    messages = service.get_messages(user.user_id, conversation_id)
    return ConversationDetailResponse(
        conversation=ConversationResponse.model_validate(conversation),
        messages=[MessageResponse.model_validate(m) for m in messages],
    )


@router.get("/conversations/{conversation_id}/messages", response_model=List[MessageResponse])
def get_messages(
    conversation_id: str,
    user: Identity = CurrentUser,
    service: NegotiationService = Service,
):
    return [MessageResponse.model_validate(m) for m in service.get_messages(user.user_id, conversation_id)]


@router.post(
    "/conversations/{conversation_id}/messages",
    response_model=NegotiationResponse,
    status_code=status.HTTP_201_CREATED,
)
def send_message(
    conversation_id: str,
    request: SendMessageRequest,
    user: Identity = CurrentUser,
    service: NegotiationService = Service,
):
    result = service.send_message(user.user_id, conversation_id, request.body)
    return NegotiationResponse.from_result(result)


@router.put("/conversations/{conversation_id}/read", response_model=ConversationResponse)
def mark_read(
    conversation_id: str,
    user: Identity = CurrentUser,
    service: NegotiationService = Service,
):
    result = service.mark_read(user.user_id, conversation_id)
    return ConversationResponse.model_validate(result.conversation)


@router.post("/conversations/{conversation_id}/proposals", response_model=NegotiationResponse)
def propose(
    conversation_id: str,
    request: Optional[ProposeRequest] = None,
    user: Identity = CurrentUser,
    service: NegotiationService = Service,
):
    """Owner proposes a gift, or an exchange for one of the other participant's books."""
    request = request or ProposeRequest()
    result = service.propose(user.user_id, conversation_id, request.requested_listing_id)
    return NegotiationResponse.from_result(result)


@router.post(
    "/conversations/{conversation_id}/proposals/accept",
    response_model=NegotiationResponse,
    responses={409: {"model": NegotiationResponse, "description": "Listing already claimed"}},
)
def accept(
    conversation_id: str,
    request: Optional[AcceptRequest] = None,
    user: Identity = CurrentUser,
    service: NegotiationService = Service,
):
    """
    Accept the pending proposal.

    Losing the race for the listing is not an error on the server side: the
    conversation is reset and the 409 body carries it with a notice.
    """
    request = request or AcceptRequest()
    result = service.accept(user.user_id, conversation_id, as_gift=request.as_gift)
    payload = NegotiationResponse.from_result(result)
    if not result.ok:
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content=payload.model_dump(mode="json"),
        )
    return payload


@router.post("/conversations/{conversation_id}/proposals/decline", response_model=NegotiationResponse)
def decline(
    conversation_id: str,
    request: Optional[ReasonRequest] = None,
    user: Identity = CurrentUser,
    service: NegotiationService = Service,
):
    request = request or ReasonRequest()
    result = service.decline(user.user_id, conversation_id, request.reason)
    return NegotiationResponse.from_result(result)


@router.post("/conversations/{conversation_id}/proposals/cancel", response_model=NegotiationResponse)
def cancel(
    conversation_id: str,
    request: Optional[ReasonRequest] = None,
    user: Identity = CurrentUser,
    service: NegotiationService = Service,
):
    request = request or ReasonRequest()
    result = service.cancel(user.user_id, conversation_id, request.reason)
    return NegotiationResponse.from_result(result)


@router.post("/conversations/{conversation_id}/dismiss", response_model=NegotiationResponse)
def dismiss(
    conversation_id: str,
    user: Identity = CurrentUser,
    service: NegotiationService = Service,
):
    return NegotiationResponse.from_result(service.dismiss(user.user_id, conversation_id))


@router.post("/conversations/{conversation_id}/complete", response_model=NegotiationResponse)
def complete(
    conversation_id: str,
    user: Identity = CurrentUser,
    service: NegotiationService = Service,
):
    """Settle an accepted conversation; repeating it is harmless."""
    return NegotiationResponse.from_result(service.complete(user.user_id, conversation_id))
