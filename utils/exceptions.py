"""
Card Order Exceptions
Single error taxonomy for the card order engine, normalized to one
externally visible shape by CardOrderError.to_dict()
"""

from decimal import Decimal
from typing import Any, Dict, Optional


class CardOrderError(Exception):
    """Base class for every error surfaced by the card order engine"""

    http_status = 500
    error_code = "card_order_error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    @property
    def error_name(self) -> str:
        return _HTTP_ERROR_NAMES.get(self.http_status, "Error")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": "error",
            "statusCode": self.http_status,
            "error": self.error_name,
            "code": self.error_code,
            "message": self.message,
        }


class BadRequestError(CardOrderError):
    http_status = 400
    error_code = "bad_request"


class NotFoundError(CardOrderError):
    http_status = 404
    error_code = "not_found"


class InternalServerError(CardOrderError):
    http_status = 500
    error_code = "internal_error"


_HTTP_ERROR_NAMES = {
    400: "Bad Request",
    404: "Not Found",
    500: "Internal Server Error",
}


# Validation and authorization (no side effects yet)

class ValidationError(BadRequestError):
    """Bad network/fee configuration, unsupported token or malformed input"""
    error_code = "validation_error"


class InsufficientBalanceError(BadRequestError):
    error_code = "insufficient_balance"

    def __init__(self, message: str, required: Decimal, available: str):
        super().__init__(message, {"required": str(required), "available": available})
        self.required = required
        self.available = available


class NoLockedFundsError(BadRequestError):
    """Sub-user order without a sufficient LOCKED funds lock from the parent"""
    error_code = "no_locked_funds"


class CardAlreadyOrderedError(BadRequestError):
    error_code = "card_already_ordered"

    def __init__(self, message: str, card_order_status: str):
        super().__init__(message, {"cardOrderStatus": card_order_status})
        self.card_order_status = card_order_status


class WalletNotFoundError(BadRequestError):
    error_code = "wallet_not_found"


class IdentityNotVerifiedError(BadRequestError):
    error_code = "identity_not_verified"


class AlreadyActiveError(BadRequestError):
    """Another instance of the same operation is in flight for this user"""
    error_code = "operation_already_active"

    def __init__(self, message: str, user_id: str, operation_name: str):
        super().__init__(message, {"userId": user_id, "operation": operation_name})
        self.user_id = user_id
        self.operation_name = operation_name


class OperationLockLostError(AlreadyActiveError):
    """This order's operation lock expired and was reclaimed before the debit"""
    error_code = "operation_lock_lost"


# Re-verification

class DriftError(BadRequestError):
    """State changed between the first check and the debit; safe to retry"""
    error_code = "changed_during_processing"

    BALANCE = "balance"
    FEE = "fee"
    FUNDS_LOCK = "funds_lock"
    USER_STATUS = "user_status"

    def __init__(self, message: str, what_changed: str):
        super().__init__(message, {"whatChanged": what_changed})
        self.what_changed = what_changed


# Execution

class DebitExecutionError(BadRequestError):
    """On-chain debit failed or could not be confirmed"""
    error_code = "debit_failed"

    def __init__(self, message: str, provider_message: Optional[str] = None,
                 transaction_hash: Optional[str] = None):
        super().__init__(message, {"providerMessage": provider_message, "transactionHash": transaction_hash})
        self.provider_message = provider_message
        self.transaction_hash = transaction_hash


class UserNotFoundError(NotFoundError):
    error_code = "user_not_found"


class SettlementPersistenceError(InternalServerError):
    """Fee debited on chain but the settlement transaction did not commit"""
    error_code = "settlement_not_persisted"

    def __init__(self, message: str, transaction_hash: str):
        super().__init__(message, {"transactionHash": transaction_hash})
        self.transaction_hash = transaction_hash


class SettlementConflictError(SettlementPersistenceError):
    """Fee debited on chain but the lock or card status had already moved; needs reconciliation"""
    error_code = "settlement_conflict"

    def __init__(self, message: str, transaction_hash: str, reason: str):
        super().__init__(message, transaction_hash=transaction_hash)
        self.details["reason"] = reason
        self.reason = reason


class OrderTimeoutError(InternalServerError):
    error_code = "order_timeout"
