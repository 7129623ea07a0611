# Pydantic Schemas for the Influence Chat platform
# Request bodies and responses for conversations, requests, wallet and settings

from pydantic import BaseModel, Field, field_validator
from typing import Any, Dict, List, Optional
from datetime import datetime
from enum import Enum


# ============================================================================
# ENUMS
# ============================================================================

class FlowStateEnum(str, Enum):
    INITIAL_OFFER = "initial_offer"
    INFLUENCER_PRICE_RESPONSE = "influencer_price_response"
    BRAND_OWNER_NEGOTIATION = "brand_owner_negotiation"
    NEGOTIATION_INPUT = "negotiation_input"
    INFLUENCER_FINAL_RESPONSE = "influencer_final_response"
    BRAND_OWNER_PRICING = "brand_owner_pricing"
    PAYMENT_PENDING = "payment_pending"
    PAYMENT_COMPLETED = "payment_completed"
    WORK_IN_PROGRESS = "work_in_progress"
    WORK_SUBMITTED = "work_submitted"
    WORK_APPROVED = "work_approved"
    REAL_TIME = "real_time"
    CLOSED = "closed"


class ChatStatusEnum(str, Enum):
    NEGOTIATION = "negotiation"
    REALTIME = "realtime"
    CLOSED = "closed"


class AwaitingRoleEnum(str, Enum):
    BRAND_OWNER = "brand_owner"
    INFLUENCER = "influencer"
    NONE = "none"


# ============================================================================
# CONVERSATION SCHEMAS
# ============================================================================

class DirectMessageCreate(BaseModel):
    """Start (or continue) a direct chat. Send the other side's id."""
    influencer_id: Optional[str] = None
    brand_owner_id: Optional[str] = None
    content: str = Field(..., min_length=1, max_length=5000)


class ActionResponse(BaseModel):
    button_id: str
    payload: Dict[str, Any] = Field(default_factory=dict)


class MessageCreate(BaseModel):
    content: Optional[str] = Field(None, max_length=5000)
    action_response: Optional[ActionResponse] = None
    expected_version: Optional[int] = Field(None, ge=0)

    @field_validator("content")
    @classmethod
    def content_not_blank(cls, v):
        if v is not None and not v.strip():
            raise ValueError("content cannot be blank")
        return v


class ButtonClick(BaseModel):
    button_id: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    additional_data: Optional[Dict[str, Any]] = None  # Accepted but never trusted
    expected_version: Optional[int] = Field(None, ge=0)


class SeenRequest(BaseModel):
    message_ids: Optional[List[str]] = None


class MessageResponse(BaseModel):
    id: str
    conversation_id: str
    sender_id: str
    receiver_id: str
    body: Optional[str] = None
    action: Optional[Dict[str, Any]] = None
    message_type: str
    seen: bool
    created_at: Optional[str] = None


class UserSummary(BaseModel):
    id: str
    name: Optional[str] = None
    role: Optional[str] = None
    profile_image_url: Optional[str] = None


class ConversationResponse(BaseModel):
    conversation_id: str
    chat_status: ChatStatusEnum
    flow_state: FlowStateEnum
    awaiting_role: AwaitingRoleEnum
    version: int
    negotiation_round: int
    final_agreed_amount: Optional[int] = None
    request_id: Optional[str] = None
    unread_count: int = 0
    last_message: Optional[Dict[str, Any]] = None
    other_user: Optional[UserSummary] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class ConversationDetailResponse(ConversationResponse):
    brand_owner_id: str
    influencer_id: str
    current_offer_amount: Optional[int] = None
    last_counter_amount: Optional[int] = None
    buttons: List[Dict[str, Any]] = []


class ConversationListResponse(BaseModel):
    conversations: List[ConversationResponse]
    next_cursor: Optional[str] = None


class TransitionResponse(BaseModel):
    message: MessageResponse
    conversation: ConversationDetailResponse
    payment: Optional[Dict[str, Any]] = None


class AttachmentResponse(BaseModel):
    url: str
    key: str
    content_type: Optional[str] = None
    size: int


# ============================================================================
# REQUEST SCHEMAS
# ============================================================================

class RequestCreate(BaseModel):
    brand_owner_id: str
    campaign_id: Optional[str] = None
    bid_id: Optional[str] = None
    message: Optional[str] = Field(None, max_length=2000)
    proposed_amount: Optional[int] = Field(None, gt=0)


class RequestResponse(BaseModel):
    id: str
    influencer_id: str
    brand_owner_id: str
    campaign_id: Optional[str] = None
    bid_id: Optional[str] = None
    status: str
    message: Optional[str] = None
    proposed_amount: Optional[int] = None
    final_agreed_amount: Optional[int] = None
    conversation_id: Optional[str] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


# ============================================================================
# WALLET SCHEMAS
# ============================================================================

class WalletResponse(BaseModel):
    user_id: str
    available: int
    frozen: int
    withdrawn: int
    currency: str


class LedgerEntryResponse(BaseModel):
    id: str
    direction: str
    kind: str
    amount_minor: int
    status: str
    conversation_id: Optional[str] = None
    gateway_payment_id: Optional[str] = None
    description: Optional[str] = None
    created_at: Optional[str] = None
    completed_at: Optional[str] = None


class DepositRequest(BaseModel):
    amount: int = Field(..., gt=0, description="Amount in minor units")


class WithdrawRequest(BaseModel):
    amount: int = Field(..., gt=0, description="Amount in minor units")
    recipient_code: Optional[str] = None  # Paystack transfer recipient


class CheckoutResponse(BaseModel):
    gateway_order_id: str
    authorization_url: Optional[str] = None
    amount_minor: int
    currency: str


# ============================================================================
# NOTIFICATION & SETTINGS SCHEMAS
# ============================================================================

class NotificationResponse(BaseModel):
    id: str
    type: str
    title: str
    message: Optional[str] = None
    data: Optional[Dict[str, Any]] = None
    read: bool
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class SettingUpdate(BaseModel):
    value: Any
