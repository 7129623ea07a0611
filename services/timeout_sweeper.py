# Timeout Sweeper for the Influence Chat platform
# Closes idle conversations through the flow engine and finishes stuck approvals

import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config.app_config import NEGOTIATION_IDLE_TIMEOUT_HOURS
from core.errors import ChatEngineError, InvariantViolation
from database.models import SYSTEM_USER_ID, utcnow
from database.chat_models import Conversation, FlowState
from services.flow_engine import Command, CommandKind, FlowEngine, TIMEOUT_STATES
from services.realtime import bind_hub
from services.settings_service import SettingsHolder

logger = logging.getLogger(__name__)


def sweep_idle_conversations(
    db: Session,
    settings: Optional[SettingsHolder] = None,
    now: Optional[datetime] = None,
    limit: int = 100,
) -> Dict[str, int]:
    """
    Issue `timeout` for every conversation idle longer than the limit and
    `advance_to_realtime` for approvals whose follow-up commit never landed.
    One failing conversation never stops the sweep.
    """
    now = now or utcnow()
    engine = FlowEngine(db, settings, clock=lambda: now)
    idle_before = now - timedelta(hours=NEGOTIATION_IDLE_TIMEOUT_HOURS)
    stats = {"closed": 0, "advanced": 0, "skipped": 0}

    idle_ids = [c.id for c in engine.store.idle_conversations(TIMEOUT_STATES, idle_before, limit)]
    approved_ids = [
        row.id for row in db.query(Conversation.id).filter(
            Conversation.flow_state == FlowState.WORK_APPROVED
        ).limit(limit).all()
    ]
    db.rollback()

    for conversation_id in idle_ids:
        try:
            engine.handle(Command(conversation_id, SYSTEM_USER_ID, CommandKind.TIMEOUT.value))
            stats["closed"] += 1
        except InvariantViolation:
            # Already logged critical by the engine; leave it for an operator
            stats["skipped"] += 1
        except ChatEngineError as e:
            # Someone acted between the query and the command
            logger.info(f"Timeout skipped for {conversation_id}: {e.detail}")
            stats["skipped"] += 1
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Timeout failed for {conversation_id}: {e}")
            stats["skipped"] += 1

    for conversation_id in approved_ids:
        try:
            if engine.advance_to_realtime(conversation_id) is not None:
                stats["advanced"] += 1
        except (ChatEngineError, SQLAlchemyError) as e:
            db.rollback()
            logger.error(f"Could not finish approval for {conversation_id}: {e}")
            stats["skipped"] += 1

    if stats["closed"] or stats["advanced"]:
        logger.info(f"Idle sweep: {stats}")
    return stats


def run_sweep(session_factory: Callable[[], Session], settings: Optional[SettingsHolder] = None, hub=None) -> Dict[str, int]:
    """Scheduler entry point: one session per run."""
    db = bind_hub(session_factory(), hub)
    try:
        return sweep_idle_conversations(db, settings)
    finally:
        db.close()
