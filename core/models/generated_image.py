from .base import Base, Column, String, DateTime, Text


class GeneratedImage(Base):
    __tablename__ = "generated_images"

    id = Column(String(64), primary_key=True)
    job_id = Column(String(128), unique=True, index=True, nullable=False)
    artifact_key = Column(String(255), nullable=False)
    original_artifact_key = Column(String(255), nullable=True)
    content_type = Column(String(64), default="image/png")
    prompt = Column(Text, nullable=True)
    user_id = Column(String(64), index=True, nullable=True)
    created_at = Column(DateTime, index=True)
