from pydantic import BaseModel, Field, ConfigDict
from typing import Optional

class UploadResponse(BaseModel):
    uniqueId: str = Field(..., description="Transfer code, 6 uppercase hex characters")

class TransferResponse(BaseModel):
    text: str = Field("", description="Uploaded text")
    filename: Optional[str] = Field(None, description="Original file name")
    file_id: Optional[str] = Field(None, description="Identifier for /download")

    model_config = ConfigDict(from_attributes=True)

class PurgeReport(BaseModel):
    records_deleted: int = 0
    blobs_deleted: int = 0
