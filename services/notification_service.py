# Notification Service for the Influence Chat platform
# Provides best-effort in-app notifications for chat and payment events

import logging
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from typing import Optional
from enum import Enum

from database.models import Notification, utcnow

logger = logging.getLogger(__name__)


class NotificationType(str, Enum):
    """Notification templates sent by the chat engine."""
    PRICE_OFFER = "price_offer"
    OFFER_ACCEPTED = "offer_accepted"
    NEGOTIATION_REQUESTED = "negotiation_requested"
    CONVERSATION_CLOSED = "conversation_closed"
    PAYMENT_REQUIRED = "payment_required"
    ESCROW_LOCKED = "escrow_locked"
    WORK_SUBMITTED = "work_submitted"
    REVISION_REQUESTED = "revision_requested"
    PAYMENT_RELEASED = "payment_released"
    ESCROW_REFUNDED = "escrow_refunded"
    DEPOSIT_COMPLETED = "deposit_completed"
    WITHDRAWAL_COMPLETED = "withdrawal_completed"
    NEW_MESSAGE = "new_message"
    SYSTEM = "system"


TEMPLATES = {
    NotificationType.PRICE_OFFER: ("New Price Offer 💰", "You received an offer of {amount}."),
    NotificationType.OFFER_ACCEPTED: ("Offer Accepted ✅", "Your offer of {amount} was accepted. Please complete the payment."),
    NotificationType.NEGOTIATION_REQUESTED: ("Negotiation Request 🤝", "A counter offer of {amount} is waiting for you."),
    NotificationType.CONVERSATION_CLOSED: ("Conversation Closed", "{reason}"),
    NotificationType.PAYMENT_REQUIRED: ("Payment Required 💳", "Complete the payment of {amount} to start the collaboration."),
    NotificationType.ESCROW_LOCKED: ("Funds Secured 🔒", "{amount} is held in escrow. You can start working."),
    NotificationType.WORK_SUBMITTED: ("Work Submitted 📤", "Work was submitted for your review."),
    NotificationType.REVISION_REQUESTED: ("Revision Requested 🔄", "Changes were requested: {note}"),
    NotificationType.PAYMENT_RELEASED: ("Payment Released 🎉", "Your work was approved and the payment was released."),
    NotificationType.ESCROW_REFUNDED: ("Funds Returned", "{amount} was returned to your wallet."),
    NotificationType.DEPOSIT_COMPLETED: ("Deposit Successful 💳", "{amount} has been added to your wallet."),
    NotificationType.WITHDRAWAL_COMPLETED: ("Withdrawal Complete 🏦", "{amount} is on its way to your account."),
    NotificationType.NEW_MESSAGE: ("New Message", "{preview}"),
}


class _Defaults(dict):
    def __missing__(self, key):
        return ""


class NotificationService:
    """
    Service for creating user notifications.
    `send` is fire-and-forget: failures are logged and never reach the caller.
    """

    def __init__(self, db: Session):
        self.db = db

    def create(
        self,
        user_id: str,
        type: NotificationType | str,
        title: str,
        message: str,
        data: Optional[dict] = None,
    ) -> Notification:
        """Create a notification inside the caller's transaction."""
        notification = Notification(
            user_id=user_id,
            type=type.value if isinstance(type, NotificationType) else str(type),
            title=title,
            message=message,
            data=data or {},
        )
        self.db.add(notification)
        self.db.flush()  # Get the ID without committing
        return notification

    def send(self, user_id: str, template: NotificationType | str, params: Optional[dict] = None) -> Optional[Notification]:
        """Render a template and commit it on its own."""
        params = params or {}
        try:
            template = NotificationType(template)
        except ValueError:
            template = NotificationType.SYSTEM
        title, body = TEMPLATES.get(template, ("Notification", "{text}"))

        try:
            notification = self.create(
                user_id=user_id,
                type=template,
                title=title,
                message=body.format_map(_Defaults(params)),
                data=params,
            )
            self.db.commit()
            return notification
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.warning(f"Notification {template.value} for {user_id} not sent: {e}")
            return None

    def mark_all_read(self, user_id: str) -> int:
        """
        Mark all notifications as read for a user.

        Returns:
            Number of notifications marked as read
        """
        return self.db.query(Notification).filter(
            Notification.user_id == user_id,
            Notification.read.is_(False)
        ).update({
            "read": True,
            "read_at": utcnow()
        }, synchronize_session=False)

    def get_unread_count(self, user_id: str) -> int:
        """Get unread notification count for a user."""
        return self.db.query(Notification).filter(
            Notification.user_id == user_id,
            Notification.read.is_(False)
        ).count()


def get_notification_service(db: Session) -> NotificationService:
    """Get a notification service instance."""
    return NotificationService(db)
