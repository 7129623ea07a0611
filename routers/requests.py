# Requests Router for the Influence Chat platform
# Influencer applications and the brand owner's connect step that opens the chat

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from auth.decorators import require_user_type
from auth.dependencies import get_current_user
from core.errors import RoleMismatch
from database.models import User, UserType
from database.chat_models import Request
from routers.conversations import conversation_detail
from routers.deps import get_chat_db, get_engine
from schemas.chat import ConversationDetailResponse, RequestCreate, RequestResponse
from services.flow_engine import FlowEngine
from services.request_service import RequestService

router = APIRouter(prefix="/requests", tags=["Requests"])


def _request_response(request: Request) -> dict:
    return {
        "id": request.id,
        "influencer_id": request.influencer_id,
        "brand_owner_id": request.brand_owner_id,
        "campaign_id": request.campaign_id,
        "bid_id": request.bid_id,
        "status": request.status.value,
        "message": request.message,
        "proposed_amount": request.proposed_amount,
        "final_agreed_amount": request.final_agreed_amount,
        "conversation_id": request.conversation.id if request.conversation else None,
        "created_at": request.created_at,
    }


@router.post("", response_model=RequestResponse, status_code=status.HTTP_201_CREATED)
async def apply_to_campaign(
    data: RequestCreate,
    db: Session = Depends(get_chat_db),
    current_user: User = Depends(require_user_type(UserType.INFLUENCER)),
):
    """Apply to a campaign or a bid (exactly one of the two)."""
    service = RequestService(db)
    try:
        request = service.apply(
            current_user,
            brand_owner_id=data.brand_owner_id,
            campaign_id=data.campaign_id,
            bid_id=data.bid_id,
            message=data.message,
            proposed_amount=data.proposed_amount,
        )
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(request)
    return _request_response(request)


@router.get("/{request_id}", response_model=RequestResponse)
async def get_request(
    request_id: str,
    db: Session = Depends(get_chat_db),
    current_user: User = Depends(get_current_user),
):
    request = RequestService(db).get(request_id)
    if current_user.id not in (request.influencer_id, request.brand_owner_id):
        raise RoleMismatch("You are not part of this request")
    return _request_response(request)


@router.post("/{request_id}/connect", response_model=ConversationDetailResponse)
async def connect_request(
    request_id: str,
    db: Session = Depends(get_chat_db),
    engine: FlowEngine = Depends(get_engine),
    current_user: User = Depends(require_user_type(UserType.BRAND_OWNER)),
):
    """Accept an application; the negotiation conversation opens at initial_offer."""
    try:
        conversation = engine.requests.connect(request_id, current_user)
        db.commit()
    except Exception:
        db.rollback()
        raise
    return conversation_detail(engine, conversation, current_user.id)
