import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, Index, Integer, String, Text, text

from paygate.database import Base


class Provider(str, enum.Enum):
    CARD = "card"
    MOBILE_MONEY = "mobile_money"
    WALLET = "wallet"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"
    REFUNDED = "refunded"


ACTIVE_STATUSES = (PaymentStatus.PENDING, PaymentStatus.PROCESSING)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


class Payment(Base):
    __tablename__ = "payments"
    __table_args__ = (
        # at most one in-flight attempt per order
        Index(
            "uq_payments_active_order",
            "order_id",
            unique=True,
            sqlite_where=text("status IN ('pending', 'processing')"),
            postgresql_where=text("status IN ('pending', 'processing')"),
        ),
        Index("ix_payments_provider_status", "provider", "status"),
    )

    id = Column(String, primary_key=True, default=_new_id)
    order_id = Column(String, nullable=False, index=True)
    user_id = Column(String, nullable=False, index=True)
    provider = Column(String, nullable=False)                    # card | mobile_money | wallet
    provider_transaction_id = Column(String, unique=True, nullable=True)  # intent / checkout request / order id
    provider_capture_id = Column(String, nullable=True)          # wallet only
    phone_number = Column(String, nullable=True)                 # mobile money only
    amount = Column(Integer, nullable=False)                     # minor units
    currency = Column(String(3), nullable=False)
    status = Column(String, nullable=False, default=PaymentStatus.PENDING.value)
    method_descriptor = Column(String, nullable=True)
    refund_id = Column(String, nullable=True)
    refund_amount = Column(Integer, nullable=True)
    risk_snapshot = Column(JSON, nullable=True)
    error_message = Column(Text, nullable=True)
    metadata_ = Column("metadata", JSON, nullable=False, default=dict)
    provider_params = Column(JSON, nullable=True)                # replayed on session recovery
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    @property
    def refundable_amount(self) -> int:
        return self.amount - (self.refund_amount or 0)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "user_id": self.user_id,
            "provider": self.provider,
            "provider_transaction_id": self.provider_transaction_id,
            "amount": self.amount,
            "currency": self.currency,
            "status": self.status,
            "method_descriptor": self.method_descriptor,
            "refund": (
                {"id": self.refund_id, "amount": self.refund_amount}
                if self.refund_id is not None or self.refund_amount is not None
                else None
            ),
            "risk": self.risk_snapshot,
            "error_message": self.error_message,
            "metadata": self.metadata_ or {},
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
