from typing import List
from pydantic import BaseModel, Field
import time


class UploadSession(BaseModel):
    """
    Bookkeeping for one chunked upload, stored as session.json next to its chunks.
    Received ordinals are not stored here; the chunk files on disk are authoritative.
    """
    session_name: str = Field(..., description="Sanitized client filename, names the chunk directory")
    client_filename: str = Field(..., description="Filename as declared by the client")
    storage_name: str = Field(..., description="Final artifact name inside the data dir")
    total_chunks: int = Field(..., ge=1)
    declared_file_size: int = Field(..., ge=0)
    created_at: int = Field(default_factory=lambda: int(time.time()))


class ChunkReceipt(BaseModel):
    success: bool = True
    filename: str
    chunk_number: int = Field(..., alias="chunkNumber")
    total_chunks: int = Field(..., alias="totalChunks")
    size: int
    received_count: int = Field(..., alias="receivedCount")

    class Config:
        populate_by_name = True


class UploadStatus(BaseModel):
    filename: str
    storage_name: str = Field(..., alias="storageName")
    total_chunks: int = Field(..., alias="totalChunks")
    declared_file_size: int = Field(..., alias="fileSize")
    received_chunks: List[int] = Field(default_factory=list, alias="receivedChunks")
    missing_chunks: List[int] = Field(default_factory=list, alias="missingChunks")

    class Config:
        populate_by_name = True

    @property
    def complete(self) -> bool:
        return not self.missing_chunks


class FinalizeResult(BaseModel):
    success: bool = True
    filename: str
    size: int
    size_formatted: str = Field(..., alias="sizeFormatted")

    class Config:
        populate_by_name = True


class FinalizeRequest(BaseModel):
    """JSON body of POST /videos/finalize-upload. Numbers may arrive as strings."""
    filename: str = Field(..., min_length=1)
    total_chunks: int = Field(..., alias="totalChunks")
    file_size: int = Field(..., alias="fileSize")

    class Config:
        populate_by_name = True
        extra = "ignore"
