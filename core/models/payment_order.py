from .base import Base, Column, String, DateTime, Integer, Text


class PaymentOrder(Base):
    __tablename__ = "payment_orders"

    id = Column(String(64), primary_key=True, index=True)
    user_id = Column(String(64), index=True, nullable=False)
    package_id = Column(String(32), nullable=True)
    amount = Column(Integer, nullable=False, default=0)  # smallest currency unit (KRW)
    credits = Column(Integer, nullable=False, default=0)
    status = Column(String(16), index=True, nullable=False, default="pending")
    payment_key = Column(String(200), nullable=True)
    gateway_response = Column(Text, nullable=True)
    created_at = Column(DateTime)
    confirmed_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime)
