# faucet_errors.py
from __future__ import annotations

from typing import Any, Dict, Optional


class FaucetError(Exception):
    """Base class for errors surfaced to API callers as {"error": ...}."""

    status_code = 500

    def __init__(self, message: str, **extra: Any):
        super().__init__(message)
        self.message = message
        self.extra: Dict[str, Any] = extra

    def to_body(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.message}
        body.update(self.extra)
        return body


class ValidationError(FaucetError):
    status_code = 400


class IneligibleError(FaucetError):
    status_code = 400


class PoolExhaustedError(IneligibleError):
    def __init__(self, message: str = "Target has reached. Try again tomorrow.", **extra: Any):
        super().__init__(message, **extra)


class PendingClaimExistsError(FaucetError):
    status_code = 400

    def __init__(self, message: str = "An existing pending claim is still being processed for this wallet", **extra: Any):
        super().__init__(message, **extra)


class CooldownActiveError(FaucetError):
    status_code = 429

    def __init__(self, reset_time: int, message: str = "Daily limit reached. Please wait 24 hours between claims."):
        super().__init__(message, resetTime=reset_time)
        self.reset_time = reset_time


class FaucetInactiveError(FaucetError):
    status_code = 400

    def __init__(self, message: str = "Faucet is currently inactive"):
        super().__init__(message)


class InsufficientFaucetBalanceError(FaucetError):
    status_code = 400

    def __init__(self, message: str = "Insufficient faucet balance"):
        super().__init__(message)


class ChainUnavailableError(FaucetError):
    status_code = 503


class TransferFailedError(FaucetError):
    status_code = 500

    def __init__(self, claim_id: int, amount: str, message: str = "Failed to process blockchain transactions"):
        super().__init__(message, claimId=claim_id, amount=amount)
        self.claim_id = claim_id


class FinalizeError(FaucetError):
    status_code = 500

    def __init__(self, claim_id: int, cause: Optional[BaseException] = None):
        super().__init__("Failed to finalize claim", claimId=claim_id)
        self.claim_id = claim_id
        self.cause = cause
