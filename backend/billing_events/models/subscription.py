from sqlalchemy import Column, Integer, String, DateTime, Enum as SAEnum, ForeignKey, func
from sqlalchemy.orm import relationship
from billing_events.core.database import Base

SUBSCRIPTION_STATUSES = ("active", "canceled")


class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False, index=True, comment="ユーザーID (外部ユーザーサービス)")
    plan_id = Column(Integer, ForeignKey("plans.id", ondelete="RESTRICT"), nullable=False, index=True)
    stripe_subscription_id = Column(String(255), nullable=False, unique=True)
    status = Column(
        SAEnum(*SUBSCRIPTION_STATUSES, name="subscription_status"),
        nullable=False,
        default="active",
    )
    current_period_start = Column(DateTime, nullable=True)
    current_period_end = Column(DateTime, nullable=True)
    canceled_at = Column(DateTime, nullable=True)
    ended_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())

    plan = relationship("Plan", back_populates="subscriptions")
    payments = relationship(
        "PaymentSubHistory",
        back_populates="subscription",
        order_by="PaymentSubHistory.created_at",
        cascade="all, delete-orphan",
    )
