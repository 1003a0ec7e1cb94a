"""Data models: manifest records and database tables."""
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel
from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CamelModel(BaseModel):
    """Serializes to the camelCase keys the gallery front end reads."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Size(CamelModel):
    width: int
    height: int


class DimensionSet(CamelModel):
    original: Size
    optimized: Size
    thumbnail: Size


class ImageRecord(CamelModel):
    """One processed source image and its two derivatives."""
    name: str
    filename: str
    extension: str
    url: str
    thumbnail_url: str
    original_size: int
    optimized_size: int
    thumbnail_size: int
    dimensions: DimensionSet
    compression: float
    processed: datetime

    def to_json(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)

    def gallery_entry(self) -> dict:
        """Subset of fields used by the gallery config file."""
        return self.model_dump(
            mode="json",
            by_alias=True,
            include={"name", "filename", "extension", "url", "thumbnail_url", "dimensions"},
        )


class LibraryStats(CamelModel):
    """Totals across the manifest."""
    total_images: int = 0
    total_original_size: int = 0
    total_optimized_size: int = 0
    total_thumbnail_size: int = 0
    total_saved: int = 0
    avg_compression: float = 0.0


class Submission(SQLModel, table=True):
    """A visitor-submitted meme waiting for review."""
    id: Optional[int] = Field(default=None, primary_key=True)
    filename: str = Field(description="Stored filename under the submissions dir")
    original_name: str
    user_text: str
    timestamp: Optional[str] = None
    approved: bool = Field(default=False, index=True)
    created_at: datetime = Field(default_factory=utcnow)


class Setting(SQLModel, table=True):
    """Application settings."""
    key: str = Field(primary_key=True)
    value: str
