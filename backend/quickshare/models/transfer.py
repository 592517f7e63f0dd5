from sqlalchemy import Column, String, Text, DateTime
from .base import Base

class Transfer(Base):
    __tablename__ = "transfers"

    code = Column(String(6), primary_key=True)  # 6 hex-символов в верхнем регистре
    text = Column(Text, nullable=False, default="")
    blob_id = Column(String(32), nullable=True)
    filename = Column(String, nullable=True)
    # По этому полю работает фоновое удаление (аналог TTL-индекса)
    created_at = Column(DateTime(timezone=True), nullable=False, index=True)

    def __repr__(self):
        return f"<Transfer(code={self.code}, blob_id={self.blob_id})>"
