# Shared router dependencies for the Influence Chat platform
# Wires the request session to the app's realtime hub, settings holder and gateway

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from core.paystack_service import PaystackService
from database.config import get_db
from services.flow_engine import FlowEngine
from services.payment_service import PaymentService
from services.realtime import bind_hub
from services.settings_service import SettingsHolder


def get_chat_db(request: Request, db: Session = Depends(get_db)) -> Session:
    """Request session whose committed outbox rows reach the app's hub."""
    return bind_hub(db, getattr(request.app.state, "hub", None))


def get_settings_holder(request: Request) -> SettingsHolder:
    holder = getattr(request.app.state, "settings", None)
    if holder is None:
        holder = SettingsHolder()
        request.app.state.settings = holder
    return holder


def get_gateway(request: Request) -> PaystackService:
    gateway = getattr(request.app.state, "gateway", None)
    return gateway if gateway is not None else PaystackService()


def get_engine(
    db: Session = Depends(get_chat_db),
    settings: SettingsHolder = Depends(get_settings_holder),
) -> FlowEngine:
    return FlowEngine(db, settings)


def get_payment_service(
    db: Session = Depends(get_chat_db),
    engine: FlowEngine = Depends(get_engine),
    gateway: PaystackService = Depends(get_gateway),
) -> PaymentService:
    return PaymentService(db, engine, gateway)
