"""Aspect-preserving resize and JPEG re-encoding."""
import math
import os
import tempfile
from pathlib import Path

from PIL import Image as PILImage, ImageOps, UnidentifiedImageError

from config import BoundingBox
from errors import EncodeError

BACKGROUND = (255, 255, 255)


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def fit_within(width: int, height: int, box: BoundingBox) -> tuple[int, int]:
    """Largest size with the source aspect ratio that fits inside ``box``.

    Never upscales: a source already inside the box keeps its size. A source
    wider than the box (by aspect ratio) is clamped on width, anything else on
    height.
    """
    if width <= box.width and height <= box.height:
        return width, height
    ratio = width / height
    if ratio > box.aspect_ratio:
        out_w = box.width
        out_h = _round_half_up(box.width / ratio)
    else:
        out_h = box.height
        out_w = _round_half_up(box.height * ratio)
    return max(1, min(out_w, box.width)), max(1, min(out_h, box.height))


def _flatten(im: PILImage.Image) -> PILImage.Image:
    """Drop alpha and palette modes so the frame can be saved as JPEG."""
    if im.mode == "P":
        im = im.convert("RGBA")
    if im.mode in ("RGBA", "LA"):
        background = PILImage.new("RGB", im.size, BACKGROUND)
        background.paste(im.convert("RGBA"), mask=im.convert("RGBA").getchannel("A"))
        return background
    if im.mode != "RGB":
        return im.convert("RGB")
    return im


class JpegEncoder:
    """Writes resized JPEG derivatives at a fixed quality."""

    def __init__(self, quality: int = 85):
        if not 1 <= quality <= 100:
            raise ValueError(f"JPEG quality must be in 1..100, got {quality}")
        self.quality = quality

    def resize(self, source: Path, box: BoundingBox, destination: Path) -> Path:
        """Write ``source`` scaled to fit ``box`` as a JPEG at ``destination``.

        The file is written next to the destination first and renamed into
        place, so readers never see a partial image.
        """
        source, destination = Path(source), Path(destination)
        try:
            with PILImage.open(source) as im:
                im.seek(0)
                frame = ImageOps.exif_transpose(im)
                size = fit_within(frame.width, frame.height, box)
                frame = _flatten(frame)
                if frame.size != size:
                    frame = frame.resize(size, PILImage.Resampling.LANCZOS)
        except FileNotFoundError as exc:
            raise EncodeError(source, destination, "source not found") from exc
        except (UnidentifiedImageError, PILImage.DecompressionBombError) as exc:
            raise EncodeError(source, destination, f"cannot decode source ({exc})") from exc
        except (OSError, ValueError) as exc:
            raise EncodeError(source, destination, f"decode failed: {exc}") from exc

        tmp_name = None
        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{destination.stem}-", suffix=".tmp", dir=destination.parent
            )
            with os.fdopen(fd, "wb") as fh:
                frame.save(fh, format="JPEG", quality=self.quality, optimize=True)
            os.replace(tmp_name, destination)
        except OSError as exc:
            if tmp_name and os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise EncodeError(source, destination, f"write failed: {exc}") from exc
        return destination
