from .base import Base, Column, String, DateTime, Integer, UniqueConstraint


class CreditTransaction(Base):
    __tablename__ = "credit_transactions"
    # 每个 (reference, reason) 只有一行流水，重放的 webhook 或重试的确认不会重复入账
    __table_args__ = (
        UniqueConstraint("reference_id", "reason", name="uq_credit_tx_reference_reason"),
    )

    id = Column(String(64), primary_key=True)
    user_id = Column(String(64), index=True, nullable=False)
    amount = Column(Integer, nullable=False)
    credit_type = Column(String(16), nullable=False)  # paid / granted
    reason = Column(String(64), nullable=False)
    reference_id = Column(String(128), nullable=True)
    balance_after = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, index=True)
