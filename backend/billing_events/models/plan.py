from sqlalchemy import Column, Integer, String, Text, DateTime, Numeric, Enum as SAEnum, func
from sqlalchemy.orm import relationship
from billing_events.core.database import Base

PLAN_NAMES = ("Free", "Pro", "Premium")
PLAN_INTERVALS = ("monthly", "yearly")
CURRENCIES = ("EUR", "USD")


class Plan(Base):
    __tablename__ = "plans"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(SAEnum(*PLAN_NAMES, name="plan_name"), nullable=False, comment="プラン名")
    price = Column(Numeric(10, 2), nullable=False, comment="価格")
    interval = Column(SAEnum(*PLAN_INTERVALS, name="plan_interval"), nullable=False, default="monthly")
    currency = Column(SAEnum(*CURRENCIES, name="plan_currency"), nullable=False, default="EUR")

    # Stripe連携
    stripe_price_id = Column(String(255), nullable=False, unique=True)

    max_events = Column(Integer, nullable=False, default=2, comment="上限数 (-1=無制限)")
    display_order = Column(Integer, nullable=False, default=0, comment="表示順（小さいほど上）")
    description = Column(Text, nullable=True, comment="プラン説明")

    created_at = Column(DateTime, nullable=False, server_default=func.now())

    subscriptions = relationship("Subscription", back_populates="plan")
