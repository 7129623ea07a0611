# Conversations Router for the Influence Chat platform
# Direct chats, messages, button clicks, seen receipts, attachments and history

from fastapi import APIRouter, Depends, File, Query, UploadFile
from sqlalchemy.orm import Session
from typing import Optional

from auth.decorators import _get_user_type
from auth.dependencies import get_current_user
from core.errors import InvalidPayload, NotFound, RoleMismatch
from core.minio_service import MAX_ATTACHMENT_BYTES, upload_attachment
from database.models import User, UserType
from database.chat_models import Conversation
from routers.deps import get_chat_db, get_engine, get_payment_service
from schemas.chat import (
    AttachmentResponse,
    ButtonClick,
    ConversationDetailResponse,
    ConversationListResponse,
    DirectMessageCreate,
    MessageCreate,
    MessageResponse,
    SeenRequest,
    TransitionResponse,
)
from services.action_messages import buttons_for, resolve_button
from services.flow_engine import Command, CommandKind, FlowEngine, TransitionResult
from services.payment_service import PaymentService
from services.realtime import mark_conversation_seen

router = APIRouter(prefix="/conversations", tags=["Conversations"])


def conversation_detail(engine: FlowEngine, conversation: Conversation, user_id: str) -> dict:
    data = engine.fanout.upsert_payload(conversation, user_id)
    data.update(
        brand_owner_id=conversation.brand_owner_id,
        influencer_id=conversation.influencer_id,
        current_offer_amount=conversation.current_offer_amount,
        last_counter_amount=conversation.last_counter_amount,
        buttons=buttons_for(conversation),
    )
    return data


def _transition_response(engine: FlowEngine, result: TransitionResult, user_id: str, payment: Optional[dict] = None) -> dict:
    return {
        "message": result.messages[-1].to_dict(),
        "conversation": conversation_detail(engine, result.conversation, user_id),
        "payment": payment,
    }


def _click(
    conversation_id: str,
    button_id: str,
    payload: dict,
    additional_data: Optional[dict],
    expected_version: Optional[int],
    current_user: User,
    engine: FlowEngine,
    payments: PaymentService,
) -> dict:
    conversation = engine.store.load_for_participant(conversation_id, current_user.id)
    kind, canonical = resolve_button(conversation, button_id, payload, additional_data)

    if kind == CommandKind.INITIATE_PAYMENT.value:
        # The gateway order is created before the transaction that records it
        checkout = payments.start_checkout(conversation_id, current_user, expected_version)
        result = checkout.pop("result")
        return _transition_response(engine, result, current_user.id, payment=checkout)

    result = engine.handle(Command(
        conversation_id=conversation_id,
        actor_id=current_user.id,
        kind=kind,
        payload=canonical,
        expected_version=expected_version,
    ))
    return _transition_response(engine, result, current_user.id)


# ============================================================================
# CONVERSATION ENDPOINTS
# ============================================================================

@router.get("", response_model=ConversationListResponse)
async def list_conversations(
    cursor: Optional[str] = Query(None, description="next_cursor from the previous page"),
    limit: int = Query(20, ge=1, le=100),
    engine: FlowEngine = Depends(get_engine),
    current_user: User = Depends(get_current_user),
):
    """Most recently updated conversations first."""
    rows, next_cursor = engine.store.list_for_user(current_user.id, cursor, limit)
    return {
        "conversations": [engine.fanout.upsert_payload(c, current_user.id) for c in rows],
        "next_cursor": next_cursor,
    }


@router.post("/direct", response_model=TransitionResponse)
async def send_direct_message(
    data: DirectMessageCreate,
    db: Session = Depends(get_chat_db),
    engine: FlowEngine = Depends(get_engine),
    current_user: User = Depends(get_current_user),
):
    """
    Send a free-form message to a user of the other role.
    The direct conversation is created on the first message.
    """
    user_type = _get_user_type(current_user)
    if user_type == UserType.BRAND_OWNER:
        other_id, other_type = data.influencer_id, UserType.INFLUENCER
    elif user_type == UserType.INFLUENCER:
        other_id, other_type = data.brand_owner_id, UserType.BRAND_OWNER
    else:
        raise RoleMismatch("Only brand owners and influencers can start direct chats")
    if not other_id:
        raise InvalidPayload(f"{other_type.value}_id is required")

    other = db.get(User, other_id)
    if other is None or other.is_deleted or other.user_type != other_type:
        raise NotFound(f"{other_type.value} {other_id} not found")

    if user_type == UserType.BRAND_OWNER:
        conversation, _ = engine.store.get_or_create_direct(current_user.id, other.id)
    else:
        conversation, _ = engine.store.get_or_create_direct(other.id, current_user.id)

    result = engine.handle(Command(
        conversation_id=conversation.id,
        actor_id=current_user.id,
        kind=CommandKind.SEND_TEXT.value,
        payload={"body": data.content},
    ))
    return _transition_response(engine, result, current_user.id)


@router.get("/{conversation_id}", response_model=ConversationDetailResponse)
async def get_conversation(
    conversation_id: str,
    engine: FlowEngine = Depends(get_engine),
    current_user: User = Depends(get_current_user),
):
    conversation = engine.store.load_for_participant(conversation_id, current_user.id)
    return conversation_detail(engine, conversation, current_user.id)


@router.get("/{conversation_id}/messages", response_model=list[MessageResponse])
async def get_messages(
    conversation_id: str,
    before: Optional[str] = Query(None, description="Message id to page back from"),
    limit: int = Query(50, ge=1, le=200),
    engine: FlowEngine = Depends(get_engine),
    current_user: User = Depends(get_current_user),
):
    """History, oldest first within the page."""
    engine.store.load_for_participant(conversation_id, current_user.id)
    return [m.to_dict() for m in engine.store.history(conversation_id, before, limit)]


# ============================================================================
# WRITE ENDPOINTS
# ============================================================================

@router.post("/{conversation_id}/messages", response_model=TransitionResponse)
async def post_message(
    conversation_id: str,
    data: MessageCreate,
    engine: FlowEngine = Depends(get_engine),
    payments: PaymentService = Depends(get_payment_service),
    current_user: User = Depends(get_current_user),
):
    """
    Free text (real_time chats only) or an action response, which is
    resolved exactly like a button click.
    """
    if data.action_response is not None:
        return _click(
            conversation_id,
            data.action_response.button_id,
            data.action_response.payload,
            None,
            data.expected_version,
            current_user,
            engine,
            payments,
        )
    if data.content is None:
        raise InvalidPayload("Provide content or action_response")

    result = engine.handle(Command(
        conversation_id=conversation_id,
        actor_id=current_user.id,
        kind=CommandKind.SEND_TEXT.value,
        payload={"body": data.content},
        expected_version=data.expected_version,
    ))
    return _transition_response(engine, result, current_user.id)


@router.post("/{conversation_id}/button-click", response_model=TransitionResponse)
async def click_button(
    conversation_id: str,
    data: ButtonClick,
    engine: FlowEngine = Depends(get_engine),
    payments: PaymentService = Depends(get_payment_service),
    current_user: User = Depends(get_current_user),
):
    return _click(
        conversation_id,
        data.button_id,
        data.payload,
        data.additional_data,
        data.expected_version,
        current_user,
        engine,
        payments,
    )


@router.post("/{conversation_id}/seen")
async def mark_seen(
    conversation_id: str,
    data: SeenRequest,
    db: Session = Depends(get_chat_db),
    current_user: User = Depends(get_current_user),
):
    """Mark inbound messages as seen (all of them when no ids are given)."""
    changed = mark_conversation_seen(db, conversation_id, current_user.id, data.message_ids)
    return {"conversation_id": conversation_id, "message_ids": changed}


@router.post("/{conversation_id}/attachments", response_model=AttachmentResponse)
async def upload_conversation_attachment(
    conversation_id: str,
    file: UploadFile = File(...),
    db: Session = Depends(get_chat_db),
    engine: FlowEngine = Depends(get_engine),
    current_user: User = Depends(get_current_user),
):
    """Upload a deliverable; the returned URL goes into a submit_work payload."""
    engine.store.load_for_participant(conversation_id, current_user.id)
    db.rollback()  # no transaction held open across the upload

    contents = await file.read()
    if not contents:
        raise InvalidPayload("File is empty")
    if len(contents) > MAX_ATTACHMENT_BYTES:
        raise InvalidPayload(f"File exceeds {MAX_ATTACHMENT_BYTES} bytes", size=len(contents))

    stored = upload_attachment(
        contents,
        file.filename or "attachment",
        file.content_type or "application/octet-stream",
        conversation_id,
    )
    return {
        "url": stored["url"],
        "key": stored["object_key"],
        "content_type": stored["content_type"],
        "size": stored["file_size"],
    }
