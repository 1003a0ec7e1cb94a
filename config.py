"""Pipeline configuration."""
import logging
import os
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator

# Configuration
SUPPORTED_EXTS = {".jpg", ".jpeg", ".png", ".gif", ".webp", ".bmp", ".tiff", ".tif"}
OUTPUT_EXT = ".jpg"
ENV_PREFIX = "MEME_"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class BoundingBox(BaseModel):
    """Maximum width/height for a resize."""
    width: int = Field(gt=0)
    height: int = Field(gt=0)

    @property
    def aspect_ratio(self) -> float:
        return self.width / self.height

    @classmethod
    def parse(cls, value: str) -> "BoundingBox":
        """Parse ``"1024x768"``."""
        w, sep, h = value.lower().partition("x")
        if not sep:
            raise ValueError(f"Bounding box must look like 1024x768, got {value!r}")
        return cls(width=int(w), height=int(h))

    def __str__(self) -> str:
        return f"{self.width}x{self.height}"


class PipelineConfig(BaseModel):
    """Directories, bounding boxes and encoder settings for the pipeline."""
    input_dir: Path = Path("./uploads")
    optimized_dir: Path = Path("./public/images")
    thumbnail_dir: Path = Path("./public/thumbnails")
    manifest_path: Path = Path("./public/imageLibrary.json")
    gallery_config_path: Optional[Path] = Path("./public/imageConfig.json")
    optimized_box: BoundingBox = BoundingBox(width=1024, height=768)
    thumbnail_box: BoundingBox = BoundingBox(width=400, height=300)
    quality: int = Field(default=85, ge=1, le=100)
    max_workers: int = Field(default=2, ge=1, le=8)
    polling: bool = False
    poll_interval: float = Field(default=1.0, gt=0)
    max_watch_restarts: int = Field(default=3, ge=1)
    prune_orphans: bool = False
    images_url_prefix: str = "/images"
    thumbnails_url_prefix: str = "/thumbnails"
    submissions_dir: Path = Path("./submissions")
    db_path: Path = Path("./memes.db")
    max_upload_bytes: int = Field(default=10 * 1024 * 1024, gt=0)
    log_level: str = "INFO"

    @field_validator("optimized_box", "thumbnail_box", mode="before")
    @classmethod
    def _parse_box(cls, value: Any) -> Any:
        if isinstance(value, str):
            return BoundingBox.parse(value)
        return value

    @field_validator("gallery_config_path", mode="before")
    @classmethod
    def _empty_disables(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("images_url_prefix", "thumbnails_url_prefix")
    @classmethod
    def _strip_slash(cls, value: str) -> str:
        return "/" + value.strip("/")

    @classmethod
    def from_env(cls, environ: Optional[dict] = None, **overrides) -> "PipelineConfig":
        """Build a config from ``MEME_*`` environment variables."""
        environ = os.environ if environ is None else environ
        values: dict[str, Any] = {}
        for name in cls.model_fields:
            key = ENV_PREFIX + name.upper()
            if key in environ:
                values[name] = environ[key]
        values.update(overrides)
        return cls(**values)

    def output_dirs(self) -> list[Path]:
        return [self.input_dir, self.optimized_dir, self.thumbnail_dir, self.manifest_path.parent]


def configure_logging(level: str = "INFO") -> None:
    """Set up root logging for the entry points."""
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)
