from .base import Base, Column, String, Integer, DateTime


class User(Base):
    __tablename__ = "users"

    id = Column(String(64), primary_key=True)
    email = Column(String(190), nullable=True)
    nickname = Column(String(100), default="")
    # 只与 credit_transactions 行一同变更
    paid_credits = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime)
    updated_at = Column(DateTime)
