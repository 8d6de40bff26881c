# module shopease.payments.models
"""Session de paiement KHQR: 1:1 avec la commande, résolue une seule fois (webhook, poll ou expiration)."""
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from shopease.infra.database import Base, utcnow


class PaymentOutcome(str, Enum):
    PAID = "paid"
    DECLINED = "declined"
    EXPIRED = "expired"


class PaymentSession(Base):
    __tablename__ = "payment_sessions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id", ondelete="CASCADE"), unique=True, index=True)
    correlation_id: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    qr_payload: Mapped[str] = mapped_column(Text)
    amount: Mapped[int] = mapped_column(Integer)
    currency: Mapped[str] = mapped_column(String(3), default="KHR")
    created_at: Mapped[datetime] = mapped_column(DateTime(), default=utcnow)
    expires_at: Mapped[datetime] = mapped_column(DateTime(), index=True)
    resolved: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    outcome: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(), nullable=True)
    resolved_via: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    gateway_reference: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at
