from pydantic import BaseModel, Field


class VideoInfo(BaseModel):
    """A published video as seen by the library listing."""
    filename: str = Field(..., description="Name inside the data dir")
    size: int = Field(..., description="File size in bytes")
    size_formatted: str = Field(..., alias="sizeFormatted")
    thumbnail_url: str = Field(..., alias="thumbnailUrl")
    mtime: int = Field(0, description="Last modification timestamp of the file")

    class Config:
        populate_by_name = True
        extra = "ignore"
