# 全モデルをインポート (create_all用)
from billing_events.models.plan import Plan
from billing_events.models.subscription import Subscription
from billing_events.models.payment_sub_history import PaymentSubHistory

__all__ = [
    "Plan",
    "Subscription",
    "PaymentSubHistory",
]
