# exceptions.py
# Error taxonomy for the settlement engine.


class SettlementError(Exception):
    """Base exception for settlement errors"""
    pass


class NotFound(SettlementError):
    """Raised when a settlement (or a partner transfer) does not exist"""

    def __init__(self, entity: str, identifier: str):
        super().__init__(f"{entity} {identifier} not found")
        self.entity = entity
        self.identifier = identifier


class DuplicatePaymentReference(SettlementError):
    """Raised when a settlement already exists for a payment request"""

    def __init__(self, payment_request_id: str):
        super().__init__(f"Settlement already exists for payment_request_id={payment_request_id}")
        self.payment_request_id = payment_request_id


class InvalidStatusTransition(SettlementError):
    """Raised when a status change is not allowed by the lifecycle"""

    def __init__(self, settlement_id: str, current: str, requested: str):
        super().__init__(f"Settlement {settlement_id} cannot move from {current} to {requested}")
        self.settlement_id = settlement_id
        self.current = current
        self.requested = requested


class SettlementOwnershipError(SettlementError):
    """Raised when a merchant acts on a settlement it does not own"""
    pass


class ReceiptNotAvailable(SettlementError):
    """Raised when a receipt is requested for an incomplete settlement"""
    pass


class GatewayError(SettlementError):
    """
    Base exception for partner liquidity gateway failures.

    retryable marks transport failures; business rejections are also
    retried by the batch policy but are reported as non-transient.
    """
    retryable = False


class ConversionFailed(GatewayError):
    """Partner rejected the currency conversion"""
    pass


class TransferRejected(GatewayError):
    """Partner rejected the bank transfer (e.g. insufficient liquidity)"""
    pass


class GatewayTimeout(GatewayError):
    """Partner call exceeded its timeout"""
    retryable = True


class GatewayUnavailable(GatewayError):
    """Partner could not be reached or answered with a server error"""
    retryable = True
