# Paystack Payment Service for escrow funding and payouts
import os
import hmac
import hashlib
import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry
from typing import Optional, Dict, Any
import logging

from config.app_config import (
    CURRENCY,
    GATEWAY_MAX_RETRIES,
    GATEWAY_BACKOFF_BASE_SECONDS,
    GATEWAY_BACKOFF_CAP_SECONDS,
)
from core.errors import ExternalUnavailable

logger = logging.getLogger(__name__)


class PaystackConfig:
    """Paystack configuration"""
    BASE_URL = os.getenv("PAYSTACK_BASE_URL", "https://api.paystack.co")
    SECRET_KEY = os.getenv("PAYSTACK_SECRET_KEY", "")
    PUBLIC_KEY = os.getenv("PAYSTACK_PUBLIC_KEY", "")
    CALLBACK_URL = os.getenv("PAYSTACK_CALLBACK_URL", "http://localhost:3000/payments/callback")
    CURRENCY = CURRENCY
    TIMEOUT_SECONDS = float(os.getenv("PAYSTACK_TIMEOUT_SECONDS", 10))


# 5xx and 429 are worth retrying, other 4xx are caller errors
RETRYABLE_STATUS = [429, 500, 502, 503, 504]


def create_session() -> requests.Session:
    """Create a requests session with capped exponential retry for the Paystack API."""
    session = requests.Session()

    retry_strategy = Retry(
        total=GATEWAY_MAX_RETRIES,
        backoff_factor=GATEWAY_BACKOFF_BASE_SECONDS,
        backoff_max=GATEWAY_BACKOFF_CAP_SECONDS,
        status_forcelist=RETRYABLE_STATUS,
        allowed_methods=["GET", "POST"],  # orders, verification and transfers
    )

    adapter = HTTPAdapter(max_retries=retry_strategy)
    session.mount("https://", adapter)
    session.mount("http://", adapter)

    return session


class PaystackService:
    """Service for handling Paystack payments"""

    def __init__(self, session: Optional[requests.Session] = None):
        self.base_url = PaystackConfig.BASE_URL
        self.secret_key = PaystackConfig.SECRET_KEY
        self.headers = {
            "Authorization": f"Bearer {self.secret_key}",
            "Content-Type": "application/json"
        }
        self.http = session or create_session()

    def _make_request(self, method: str, endpoint: str, data: Optional[Dict] = None) -> Dict[str, Any]:
        """Make a request to Paystack API; transient failures are retried by the session adapter"""
        url = f"{self.base_url}{endpoint}"

        try:
            response = self.http.request(
                method,
                url,
                headers=self.headers,
                json=data,
                timeout=PaystackConfig.TIMEOUT_SECONDS,
            )
            response.raise_for_status()
            return response.json()
        except requests.exceptions.HTTPError as e:
            logger.error(f"Paystack rejected {method} {endpoint}: {e}")
            raise ExternalUnavailable(f"Payment gateway rejected the request: {e}", service="paystack")
        except (requests.exceptions.RetryError, requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
            logger.error(f"Paystack API unavailable for {method} {endpoint}: {e}")
            raise ExternalUnavailable("Payment gateway is unavailable", service="paystack")

    def initialize_transaction(
        self,
        email: str,
        amount: int,
        reference: Optional[str] = None,
        callback_url: Optional[str] = None,
        metadata: Optional[Dict] = None
    ) -> Dict[str, Any]:
        """
        Initialize a Paystack transaction (our payment order).

        Args:
            email: Payer's email
            amount: Amount in minor units
            reference: Our order reference; Paystack echoes it back in the webhook
            callback_url: URL to redirect after payment
            metadata: conversation_id, user_id, purpose

        Returns:
            Dict with authorization_url, access_code and reference
        """
        data = {
            "email": email,
            "amount": amount,
            "currency": PaystackConfig.CURRENCY,
            "callback_url": callback_url or PaystackConfig.CALLBACK_URL,
            "metadata": metadata or {},
        }
        if reference:
            data["reference"] = reference

        response = self._make_request("POST", "/transaction/initialize", data)
        return response.get("data", {})

    def verify_transaction(self, reference: str) -> Dict[str, Any]:
        """Verify a Paystack transaction by reference"""
        return self._make_request("GET", f"/transaction/verify/{reference}").get("data", {})

    def initiate_transfer(
        self,
        amount: int,
        recipient_code: str,
        reference: str,
        reason: str = "Wallet withdrawal"
    ) -> Dict[str, Any]:
        """
        Send a payout to a saved transfer recipient.

        Args:
            amount: Amount in minor units
            recipient_code: Paystack transfer recipient (RCP_...)
            reference: Unique reference, the withdrawal ledger entry id
            reason: Shown on the recipient's statement
        """
        data = {
            "source": "balance",
            "amount": amount,
            "recipient": recipient_code,
            "reference": reference,
            "reason": reason,
            "currency": PaystackConfig.CURRENCY,
        }
        return self._make_request("POST", "/transfer", data).get("data", {})

    @staticmethod
    def format_amount(amount_minor: int) -> str:
        """
        Format amount from minor units to a display string

        Returns:
            Formatted string like "INR 3,000.00"
        """
        return f"{PaystackConfig.CURRENCY} {amount_minor / 100:,.2f}"


# Webhook handler for Paystack events
class PaystackWebhookHandler:
    """Handle Paystack webhook events"""

    SUPPORTED_EVENTS = [
        "charge.success",
        "transfer.success",
        "transfer.failed",
    ]

    @staticmethod
    def verify_webhook(payload: bytes, signature: Optional[str], secret_key: Optional[str] = None) -> bool:
        """
        Verify webhook signature

        Args:
            payload: Raw request body
            signature: X-Paystack-Signature header value
            secret_key: Paystack secret key

        Returns:
            True if signature is valid
        """
        if not signature:
            return False
        key = secret_key if secret_key is not None else PaystackConfig.SECRET_KEY
        computed_signature = hmac.new(
            key.encode('utf-8'),
            payload,
            hashlib.sha512
        ).hexdigest()

        return hmac.compare_digest(computed_signature, signature)

    @staticmethod
    def handle_charge_success(data: Dict[str, Any]) -> Dict[str, Any]:
        """Normalize a successful charge webhook"""
        return {
            "event": "charge.success",
            "reference": data.get("reference"),
            "payment_id": str(data.get("id")) if data.get("id") is not None else data.get("reference"),
            "amount": data.get("amount"),
            "currency": data.get("currency"),
            "customer_email": (data.get("customer") or {}).get("email"),
            "metadata": data.get("metadata") or {},
            "paid_at": data.get("paid_at"),
        }
