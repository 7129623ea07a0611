import os
from dotenv import load_dotenv

load_dotenv()

# Currency (all amounts are stored in minor units, e.g. paise)
CURRENCY = os.getenv("CURRENCY", "INR")

# Negotiation
MAX_NEGOTIATION_ROUNDS = int(os.getenv("MAX_NEGOTIATION_ROUNDS", 3))
MIN_OFFER_AMOUNT_MINOR = int(os.getenv("MIN_OFFER_AMOUNT_MINOR", 100))  # INR 1
MAX_OFFER_AMOUNT_MINOR = int(os.getenv("MAX_OFFER_AMOUNT_MINOR", 10_000_000_000))  # INR 10 crore

# Idle timeout for negotiation / unpaid / unstarted work
NEGOTIATION_IDLE_TIMEOUT_HOURS = int(os.getenv("NEGOTIATION_IDLE_TIMEOUT_HOURS", 72))
SWEEP_INTERVAL_MINUTES = int(os.getenv("SWEEP_INTERVAL_MINUTES", 15))

# Platform Fees (fallback when system_settings has no commission_rate_pct)
DEFAULT_COMMISSION_RATE_PCT = os.getenv("DEFAULT_COMMISSION_RATE_PCT", "10")

# Wallet Settings
MIN_WITHDRAWAL_AMOUNT_MINOR = int(os.getenv("MIN_WITHDRAWAL_AMOUNT_MINOR", 10000))  # INR 100

# Realtime
OUTBOX_REDELIVERY_SECONDS = int(os.getenv("OUTBOX_REDELIVERY_SECONDS", 30))

# Per-request database deadline (PostgreSQL statement_timeout)
REQUEST_DB_TIMEOUT_MS = int(os.getenv("REQUEST_DB_TIMEOUT_MS", 5000))

# Payment gateway retries
GATEWAY_MAX_RETRIES = int(os.getenv("GATEWAY_MAX_RETRIES", 3))
GATEWAY_BACKOFF_BASE_SECONDS = float(os.getenv("GATEWAY_BACKOFF_BASE_SECONDS", 0.5))
GATEWAY_BACKOFF_CAP_SECONDS = float(os.getenv("GATEWAY_BACKOFF_CAP_SECONDS", 8))

# Attempts at confirming a paid order when a concurrent writer wins the version check
PAYMENT_CONFIRM_ATTEMPTS = int(os.getenv("PAYMENT_CONFIRM_ATTEMPTS", 3))
