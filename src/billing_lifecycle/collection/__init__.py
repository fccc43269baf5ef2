from billing_lifecycle.collection.collector import PaymentCollector
from billing_lifecycle.collection.models import PaymentAttempt

__all__ = ["PaymentAttempt", "PaymentCollector"]
