from sqlalchemy import Column, Integer, String, Text, DateTime, Numeric, Enum as SAEnum, ForeignKey, func
from sqlalchemy.orm import relationship
from billing_events.core.database import Base
from billing_events.models.plan import CURRENCIES

PAYMENT_STATUSES = ("paid", "failed")


class PaymentSubHistory(Base):
    __tablename__ = "payments_sub_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    subscription_id = Column(Integer, ForeignKey("subscriptions.id", ondelete="CASCADE"), nullable=False, index=True)
    stripe_invoice_id = Column(String(255), nullable=False, unique=True, comment="冪等キー")
    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(SAEnum(*CURRENCIES, name="payment_currency"), nullable=False)
    status = Column(SAEnum(*PAYMENT_STATUSES, name="payment_status"), nullable=False)
    description = Column(Text, nullable=True)
    paid_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, server_default=func.now())

    subscription = relationship("Subscription", back_populates="payments")
