"""Generation history model."""

from sqlalchemy import Column, DateTime, ForeignKey, Integer, JSON, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


class GenerationHistory(Base):
    """Completed text-to-speech generation, written after billing."""

    __tablename__ = "generation_history"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    account_id = Column(String, ForeignKey("accounts.id"), nullable=False, index=True)
    job_id = Column(String, nullable=False, index=True)
    text = Column(String, nullable=False)
    voice_id = Column(String, nullable=False)
    voice_name = Column(String, nullable=True)
    audio_url = Column(String, nullable=False)
    characters_used = Column(Integer, nullable=False, default=0)
    credits_used = Column(Integer, nullable=False, default=0)
    settings = Column(JSON, nullable=True)
    status = Column(String, nullable=False, default="completed")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)

    account = relationship("Account", back_populates="generations")
