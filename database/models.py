# Database Models for the Influence Chat platform
# Users, system settings (with audit trail) and in-app notifications

from sqlalchemy import Column, String, Integer, DateTime, ForeignKey, Text, JSON, Enum, Boolean
from sqlalchemy.orm import declarative_base, relationship, Session
from sqlalchemy.sql import func
from datetime import datetime, timezone
import uuid
import enum

Base = declarative_base()

# Reserved identities. SYSTEM sends system messages, PLATFORM owns the fee wallet.
SYSTEM_USER_ID = "00000000-0000-0000-0000-000000000000"
PLATFORM_USER_ID = "00000000-0000-0000-0000-000000000001"


def generate_uuid():
    return str(uuid.uuid4())


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# Enums
class UserType(str, enum.Enum):
    BRAND_OWNER = "brand_owner"
    INFLUENCER = "influencer"
    ADMIN = "admin"


# Models
class User(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    email = Column(String(255), unique=True, nullable=False, index=True)
    name = Column(String(255))
    user_type = Column(Enum(UserType, values_callable=lambda x: [e.value for e in x], name="usertype"), nullable=False, default=UserType.INFLUENCER)
    profile_image_url = Column(String(500))
    is_deleted = Column(Boolean, default=False)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    # Relationships
    notifications = relationship("Notification", back_populates="user", cascade="all, delete-orphan")

    def summary(self) -> dict:
        """Display profile consumed by the chat core."""
        return {
            "id": self.id,
            "name": self.name,
            "role": self.user_type.value if self.user_type else None,
            "profile_image_url": self.profile_image_url,
        }


class SystemSetting(Base):
    """Key/value platform settings (commission_rate_pct, feature flags)."""
    __tablename__ = "system_settings"

    key = Column(String(100), primary_key=True)
    value = Column(JSON, nullable=False)
    updated_by = Column(String(36), ForeignKey("users.id"), nullable=True)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())


class SettingsAudit(Base):
    """Append-only record of every settings change."""
    __tablename__ = "settings_audit"

    id = Column(Integer, primary_key=True, autoincrement=True)
    key = Column(String(100), nullable=False, index=True)
    old_value = Column(JSON)
    new_value = Column(JSON)
    changed_by = Column(String(36), ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, server_default=func.now())


class Notification(Base):
    """User notifications."""
    __tablename__ = "notifications"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)

    type = Column(String(50), nullable=False)  # price_offer, payment_received, etc.
    title = Column(String(200), nullable=False)
    message = Column(Text)
    data = Column(JSON)  # Additional context (conversation_id, amount, etc.)

    read = Column(Boolean, default=False)
    read_at = Column(DateTime)

    created_at = Column(DateTime, server_default=func.now())

    # Relationships
    user = relationship("User", back_populates="notifications")


def ensure_reserved_users(db: Session):
    """Seed the system and platform users if they don't exist yet."""
    reserved = [
        (SYSTEM_USER_ID, "system@influence-chat.internal", "System"),
        (PLATFORM_USER_ID, "platform@influence-chat.internal", "Platform"),
    ]
    for user_id, email, name in reserved:
        if db.get(User, user_id) is None:
            db.add(User(id=user_id, email=email, name=name, user_type=UserType.ADMIN))
    db.flush()
