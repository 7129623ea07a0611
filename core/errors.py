# Error taxonomy for the Negotiated-Chat Engine
# Each error carries the HTTP status it maps to; routers never translate them by hand.

from typing import Any, Dict, Optional


class ChatEngineError(Exception):
    """Base class for business and infrastructure errors raised by the engine."""

    status_code = 500
    code = "engine_error"

    def __init__(self, detail: str, **extra: Any):
        super().__init__(detail)
        self.detail = detail
        self.extra: Dict[str, Any] = extra

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "detail": self.detail, **self.extra}


class IllegalTransition(ChatEngineError):
    """Command kind is not legal for the conversation's current flow state."""
    status_code = 422
    code = "illegal_transition"


class InvalidAmount(ChatEngineError):
    status_code = 422
    code = "invalid_amount"


class InvalidPayload(ChatEngineError):
    """Required command fields are missing or malformed."""
    status_code = 422
    code = "invalid_payload"


class RoleMismatch(ChatEngineError):
    """Actor is not a participant, or not the role the conversation awaits."""
    status_code = 403
    code = "role_mismatch"


class NotFound(ChatEngineError):
    status_code = 404
    code = "not_found"


class Conflict(ChatEngineError):
    """Optimistic version check failed; the caller must re-read and retry."""
    status_code = 409
    code = "conflict"


class InsufficientFunds(ChatEngineError):
    status_code = 402
    code = "insufficient_funds"


class InvariantViolation(ChatEngineError):
    """A post-condition failed. The transaction is aborted and never silently recovered."""
    status_code = 500
    code = "invariant_violation"


class ExternalUnavailable(ChatEngineError):
    """Gateway, storage or notification provider is down."""
    status_code = 503
    code = "external_unavailable"

    def __init__(self, detail: str, service: Optional[str] = None, **extra: Any):
        if service:
            extra["service"] = service
        super().__init__(detail, **extra)
