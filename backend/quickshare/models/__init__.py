from .base import Base
from .transfer import Transfer
from .blob import Blob, BlobChunk

# Этот список нужен, чтобы IDE и инструменты видели, что экспортируется
__all__ = [
    "Base",
    "Transfer",
    "Blob", "BlobChunk",
]
