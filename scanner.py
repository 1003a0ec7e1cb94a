"""Image discovery and metadata extraction."""
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable

from PIL import Image as PILImage, UnidentifiedImageError

from config import SUPPORTED_EXTS
from errors import MetadataError

ORIENTATION_TAG = 0x0112
# EXIF orientations that turn the image a quarter turn
ROTATED_ORIENTATIONS = {5, 6, 7, 8}


@dataclass(frozen=True)
class ImageMetadata:
    """Intrinsic properties of a source image."""
    width: int
    height: int
    format: str
    size: int
    created: datetime
    modified: datetime


def is_image_file(path: Path) -> bool:
    """True for non-hidden files with a supported image extension."""
    return path.suffix.lower() in SUPPORTED_EXTS and not path.name.startswith(".")


def iter_image_files(root: Path) -> Iterable[Path]:
    """Iterate over the image files directly inside ``root``, sorted by name."""
    for p in sorted(root.iterdir()):
        if p.is_file() and is_image_file(p):
            yield p


def file_mtime(path: Path) -> datetime:
    """Modification time of ``path`` as an aware UTC datetime."""
    return datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)


def read_image_meta(path: Path) -> ImageMetadata:
    """Read dimensions, format and file times of an image.

    Dimensions are reported after applying the EXIF orientation, so they match
    what the encoder will produce.
    """
    path = Path(path)
    try:
        stat = path.stat()
        with PILImage.open(path) as im:
            fmt = (im.format or path.suffix.lstrip(".")).lower()
            width, height = im.size
            if im.getexif().get(ORIENTATION_TAG) in ROTATED_ORIENTATIONS:
                width, height = height, width
    except FileNotFoundError as exc:
        raise MetadataError(path, "file not found") from exc
    except PermissionError as exc:
        raise MetadataError(path, "permission denied") from exc
    except (UnidentifiedImageError, PILImage.DecompressionBombError) as exc:
        raise MetadataError(path, f"not a decodable image ({exc})") from exc
    except (OSError, ValueError) as exc:
        raise MetadataError(path, str(exc)) from exc

    if width <= 0 or height <= 0:
        raise MetadataError(path, f"invalid dimensions {width}x{height}")

    created_ts = getattr(stat, "st_birthtime", stat.st_ctime)
    return ImageMetadata(
        width=width,
        height=height,
        format=fmt,
        size=stat.st_size,
        created=datetime.fromtimestamp(created_ts, tz=timezone.utc),
        modified=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
    )
