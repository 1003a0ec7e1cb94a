import os
from pathlib import Path

import pytest
from PIL import Image, ImageDraw

from config import PipelineConfig


def save_image(path: Path, size=(1600, 1200), mode="RGB", fmt=None, color=None) -> Path:
    """Write a small synthetic image; goes through a hidden temp file so
    directory watchers only ever see the finished file."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    alpha = mode in ("RGBA", "LA")
    im = Image.new("RGBA", size, color or (200, 40, 40, 128 if alpha else 255))
    draw = ImageDraw.Draw(im)
    # some texture so JPEG sizes are not trivially tiny
    for x in range(0, size[0], 40):
        draw.line([(x, 0), (x, size[1])], fill=(0, 0, 0, 255), width=3)
    if mode != "RGBA":
        im = im.convert(mode)
    fmt = fmt or {".jpg": "JPEG", ".jpeg": "JPEG", ".png": "PNG", ".gif": "GIF", ".webp": "WEBP",
                  ".bmp": "BMP", ".tif": "TIFF", ".tiff": "TIFF"}[path.suffix.lower()]
    if fmt == "JPEG" and im.mode not in ("RGB", "L"):
        im = im.convert("RGB")
    tmp = path.with_name(f".{path.name}.part")
    im.save(tmp, format=fmt)
    os.replace(tmp, path)
    return path


@pytest.fixture
def make_image():
    return save_image


@pytest.fixture
def config(tmp_path):
    cfg = PipelineConfig(
        input_dir=tmp_path / "uploads",
        optimized_dir=tmp_path / "public" / "images",
        thumbnail_dir=tmp_path / "public" / "thumbnails",
        manifest_path=tmp_path / "public" / "imageLibrary.json",
        gallery_config_path=tmp_path / "public" / "imageConfig.json",
        submissions_dir=tmp_path / "submissions",
        db_path=tmp_path / "memes.db",
        polling=True,
        poll_interval=0.1,
    )
    cfg.input_dir.mkdir(parents=True)
    return cfg
