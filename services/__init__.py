# Services Module for the Influence Chat platform
# Contains business logic services

from services.notification_service import NotificationService, NotificationType, get_notification_service
from services.settings_service import SettingsHolder, SettingsService, get_settings_service
from services.conversation_store import ConversationStore, get_conversation_store
from services.ledger_service import LedgerService, get_ledger_service
from services.flow_engine import Command, CommandKind, FlowEngine, TransitionResult, get_flow_engine
from services.request_service import RequestService, get_request_service
from services.payment_service import PaymentService
from services.realtime import ConnectionManager, FanoutPlanner, RealtimeHub

__all__ = [
    'NotificationService',
    'NotificationType',
    'get_notification_service',
    'SettingsHolder',
    'SettingsService',
    'get_settings_service',
    'ConversationStore',
    'get_conversation_store',
    'LedgerService',
    'get_ledger_service',
    'Command',
    'CommandKind',
    'FlowEngine',
    'TransitionResult',
    'get_flow_engine',
    'RequestService',
    'get_request_service',
    'PaymentService',
    'ConnectionManager',
    'FanoutPlanner',
    'RealtimeHub',
]
