# Payments Router for the Influence Chat platform
# Paystack webhook: signed, replay-safe settlement of deposits and escrow payments

import logging

from fastapi import APIRouter, Depends, Header, Request
from typing import Optional

from routers.deps import get_payment_service
from services.payment_service import PaymentService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["Payments"])


@router.post("/webhook")
async def paystack_webhook(
    request: Request,
    x_paystack_signature: Optional[str] = Header(None),
    payments: PaymentService = Depends(get_payment_service),
):
    """
    Paystack calls this for every charge. The raw body is what gets signed,
    so it is read before any JSON parsing.
    """
    raw_body = await request.body()
    result = payments.handle_webhook(raw_body, x_paystack_signature)
    logger.info(f"Paystack webhook handled: {result['status']}")
    return result
