# Schemas module for the Influence Chat platform
# Organizes all Pydantic schemas in a modular structure

from schemas.chat import (
    # Enums
    FlowStateEnum,
    ChatStatusEnum,
    AwaitingRoleEnum,

    # Conversation schemas
    DirectMessageCreate,
    ActionResponse,
    MessageCreate,
    ButtonClick,
    SeenRequest,
    MessageResponse,
    UserSummary,
    ConversationResponse,
    ConversationDetailResponse,
    ConversationListResponse,
    TransitionResponse,
    AttachmentResponse,

    # Request schemas
    RequestCreate,
    RequestResponse,

    # Wallet schemas
    WalletResponse,
    LedgerEntryResponse,
    DepositRequest,
    WithdrawRequest,
    CheckoutResponse,

    # Notification & settings schemas
    NotificationResponse,
    SettingUpdate,
)
