# Request Service for the Influence Chat platform
# Binding requests (influencer applications) and how they open conversations

import logging
from typing import Optional

from sqlalchemy.orm import Session

from core.errors import IllegalTransition, InvalidPayload, NotFound, RoleMismatch
from database.models import User, UserType
from database.chat_models import Request, RequestStatus, Conversation, MessageType
from services.conversation_store import ConversationStore
from services.realtime import FanoutPlanner
from services.action_messages import render_action, format_amount

logger = logging.getLogger(__name__)

# Statuses a request may not leave
TERMINAL_STATUSES = {RequestStatus.COMPLETED, RequestStatus.REJECTED}


class RequestService:
    def __init__(self, db: Session):
        self.db = db
        self.store = ConversationStore(db)

    def get(self, request_id: str) -> Request:
        request = self.db.get(Request, request_id)
        if request is None:
            raise NotFound(f"Request {request_id} not found")
        return request

    def apply(
        self,
        influencer: User,
        brand_owner_id: str,
        campaign_id: Optional[str] = None,
        bid_id: Optional[str] = None,
        message: Optional[str] = None,
        proposed_amount: Optional[int] = None,
    ) -> Request:
        """An influencer applies to exactly one campaign or bid."""
        if (campaign_id is None) == (bid_id is None):
            raise InvalidPayload("Provide exactly one of campaign_id or bid_id")
        if brand_owner_id == influencer.id:
            raise InvalidPayload("You cannot apply to your own campaign")

        brand_owner = self.db.get(User, brand_owner_id)
        if brand_owner is None or brand_owner.user_type != UserType.BRAND_OWNER:
            raise NotFound(f"Brand owner {brand_owner_id} not found")

        request = Request(
            influencer_id=influencer.id,
            brand_owner_id=brand_owner_id,
            campaign_id=campaign_id,
            bid_id=bid_id,
            message=message,
            proposed_amount=proposed_amount,
            status=RequestStatus.APPLIED,
        )
        self.db.add(request)
        self.db.flush()
        logger.info(f"Request {request.id} created by {influencer.id}")
        return request

    def connect(self, request_id: str, actor: User) -> Conversation:
        """
        The brand owner accepts an application: the request becomes connected
        and its negotiation conversation is opened at initial_offer.
        """
        request = self.get(request_id)
        if actor.id != request.brand_owner_id:
            raise RoleMismatch("Only the brand owner can connect this request")
        if request.status != RequestStatus.APPLIED:
            raise IllegalTransition(
                f"Request is already {request.status.value}",
                request_status=request.status.value,
            )

        request.status = RequestStatus.CONNECTED
        conversation = self.store.create_for_request(request)

        text = "Connection accepted. Send your price offer to start the negotiation."
        if request.proposed_amount:
            text = f"{text} The influencer proposed {format_amount(request.proposed_amount)}."
        opening = self.store.append_message(
            conversation,
            sender_id=request.influencer_id,
            receiver_id=request.brand_owner_id,
            action=render_action(conversation, text, {"proposed_amount": request.proposed_amount}),
            message_type=MessageType.AUTOMATED,
        )
        FanoutPlanner(self.store).plan_transition(conversation, [opening])
        self.db.flush()
        logger.info(f"Request {request.id} connected, conversation {conversation.id}")
        return conversation

    def sync_status(self, request_id: Optional[str], status: RequestStatus, final_agreed_amount: Optional[int] = None):
        """Mirror a conversation transition onto its request, in the same transaction."""
        if request_id is None:
            return None
        request = self.get(request_id)
        if request.status in TERMINAL_STATUSES and request.status != status:
            logger.warning(f"Request {request.id} is {request.status.value}, ignoring move to {status.value}")
            return request
        request.status = status
        if final_agreed_amount is not None:
            request.final_agreed_amount = final_agreed_amount
        self.db.flush()
        return request


def get_request_service(db: Session) -> RequestService:
    return RequestService(db)
