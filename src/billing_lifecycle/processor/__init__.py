from billing_lifecycle.processor.base import ChargeResult, ChargeStatus, PaymentProcessor
from billing_lifecycle.processor.http import HttpPaymentProcessor, ProcessorConfig
from billing_lifecycle.processor.mock import MockPaymentProcessor

__all__ = [
    "ChargeResult",
    "ChargeStatus",
    "HttpPaymentProcessor",
    "MockPaymentProcessor",
    "PaymentProcessor",
    "ProcessorConfig",
]
