"""Settlement error taxonomy.

Messages on these exceptions are shown to end users, so they name the cause
category only. Identifiers and gateway text go to the log, not the message.
"""


class SettlementError(Exception):
    """Base exception for settlement operations"""

    status_code = 500
    category = "processing_error"
    default_message = "Payout could not be processed"

    def __init__(self, message=None):
        self.message = message or self.default_message
        super().__init__(self.message)


# ============================================================
# VALIDATION (nothing mutated)
# ============================================================

class ValidationError(SettlementError):
    status_code = 400
    category = "validation"
    default_message = "Invalid request"


class InvalidAmountError(ValidationError):
    default_message = "Amount must be a positive whole number"


class InvalidPinError(ValidationError):
    status_code = 401
    category = "invalid_pin"
    default_message = "Invalid PIN"


class PayoutNotFoundError(ValidationError):
    status_code = 404
    category = "not_found"
    default_message = "Payout not found"


class MissingDestinationError(ValidationError):
    category = "no_payment_method"
    default_message = "No payment method found. Please add a mobile money or bank account."


class IncompleteDestinationError(ValidationError):
    category = "no_payment_method"
    default_message = "Payment account details are incomplete. Please update your account information."


# ============================================================
# FUNDING (no gateway call made)
# ============================================================

class FundingError(SettlementError):
    status_code = 400
    category = "insufficient_funds"
    default_message = "Insufficient funds for payout"


class InsufficientEscrowError(FundingError):
    default_message = "Insufficient escrow balance"


# ============================================================
# STATE / GATEWAY / LEDGER
# ============================================================

class AlreadyProcessedError(SettlementError):
    status_code = 409
    category = "already_processed"
    default_message = "Payout already processed"


class InvalidTransitionError(SettlementError):
    status_code = 409
    category = "invalid_transition"
    default_message = "Illegal payout status transition"


class GatewayError(SettlementError):
    status_code = 502
    category = "gateway_declined"
    default_message = "The payment provider declined the payout"


class LedgerError(SettlementError):
    status_code = 500
    category = "processing_error"
    default_message = "Balance update failed"


class WebhookSignatureError(SettlementError):
    status_code = 401
    category = "unauthorized"
    default_message = "Invalid signature"
