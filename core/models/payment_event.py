from .base import Base, Column, String, DateTime, Text


class PaymentEvent(Base):
    __tablename__ = "payment_events"

    id = Column(String(64), primary_key=True)
    event_type = Column(String(64), index=True)
    order_id = Column(String(64), index=True, nullable=True)
    gateway_status = Column(String(32), nullable=True)
    outcome = Column(String(32))
    raw_body = Column(Text)
    created_at = Column(DateTime)
