from sqlalchemy import Column, Integer, String, BigInteger, DateTime, ForeignKey, LargeBinary
from .base import Base

class Blob(Base):
    """Файл в чанковом хранилище (метаданные)"""
    __tablename__ = "blobs"

    id = Column(String(32), primary_key=True)  # uuid4 hex
    filename = Column(String, nullable=True)
    content_type = Column(String, nullable=True)
    length = Column(BigInteger, nullable=False, default=0)
    chunk_size = Column(Integer, nullable=False)
    sha256 = Column(String(64), nullable=True)
    uploaded_at = Column(DateTime(timezone=True), nullable=False, index=True)

    def __repr__(self):
        return f"<Blob(id={self.id}, filename={self.filename}, length={self.length})>"

class BlobChunk(Base):
    __tablename__ = "blob_chunks"

    blob_id = Column(String(32), ForeignKey("blobs.id", ondelete="CASCADE"), primary_key=True)
    n = Column(Integer, primary_key=True)  # номер чанка с нуля
    data = Column(LargeBinary, nullable=False)
