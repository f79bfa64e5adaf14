from typing import Dict
from pydantic import BaseModel, Field, model_validator


class RangeSpec(BaseModel):
    """Inclusive byte window [start, end] requested by a client."""
    start: int = Field(..., ge=0)
    end: int = Field(..., ge=0)

    @model_validator(mode="after")
    def _ordered(self):
        if self.start > self.end:
            raise ValueError(f"start {self.start} is after end {self.end}")
        return self

    @property
    def length(self) -> int:
        return self.end - self.start + 1


class StreamPlan(BaseModel):
    """
    Response metadata for one streaming request.
    Derived from (file size, range) alone, never from the file itself.
    """
    status_code: int = Field(..., description="200 for the full file, 206 for a range")
    is_partial: bool = False
    start: int = 0
    end: int = Field(..., description="Inclusive last byte; -1 for an empty file")
    chunk_size: int = Field(..., ge=0, description="Number of body bytes")
    total_size: int = Field(..., ge=0)

    def headers(self, content_type: str = "video/mp4") -> Dict[str, str]:
        headers = {
            "Content-Length": str(self.chunk_size),
            "Content-Type": content_type,
            "Accept-Ranges": "bytes",
            "Cache-Control": "no-cache",
        }
        if self.is_partial:
            headers["Content-Range"] = f"bytes {self.start}-{self.end}/{self.total_size}"
        return headers
