"""Utility functions."""
import math
import re
from pathlib import Path

from fastapi import HTTPException

_NON_ALNUM = re.compile(r"[^a-z0-9]+")


def resolve_under_root(root: Path, candidate: Path) -> Path:
    """Resolve a path ensuring it's under the root directory."""
    root = root.resolve()
    real = candidate.resolve()
    if root not in real.parents and real != root:
        raise HTTPException(status_code=400, detail="Path is outside root")
    return real


def normalize_name(filename: str) -> str:
    """Turn a filename into the lowercase, hyphenated key used for outputs."""
    stem = Path(filename).stem.lower()
    name = _NON_ALNUM.sub("-", stem).strip("-")
    return name or "image"


def safe_filename(filename: str) -> str:
    """Strip directories and odd characters from an uploaded filename."""
    base = Path(filename.replace("\\", "/")).name
    base = re.sub(r"[^A-Za-z0-9._ -]+", "_", base).strip(" .")
    return base.lstrip(".") or "upload"


def human_size(num_bytes: int) -> str:
    """Format a byte count for logs and the stats endpoint."""
    if num_bytes <= 0:
        return "0 Bytes"
    units = ["Bytes", "KB", "MB", "GB", "TB"]
    i = min(int(math.log(num_bytes, 1024)), len(units) - 1)
    value = round(num_bytes / 1024 ** i, 2)
    return f"{value:g} {units[i]}"
