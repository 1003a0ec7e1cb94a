"""FastAPI routes for the meme gallery and upload service."""
import os
import secrets
import shutil
import tempfile
import time
from datetime import datetime
from pathlib import Path
from typing import Optional

from fastapi import File, Form, HTTPException, Request, UploadFile
from fastapi.responses import HTMLResponse
from jinja2 import Environment, FileSystemLoader, select_autoescape
from pydantic import BaseModel

from database import add_submission, get_setting, list_submissions, set_submission_approval
from models import Submission
from scanner import is_image_file
from utils import human_size, resolve_under_root, safe_filename

# Configuration
APP_DIR = Path(__file__).resolve().parent
TEMPLATES_DIR = APP_DIR / "templates"

# Jinja environment
jinja_env = Environment(
    loader=FileSystemLoader(str(TEMPLATES_DIR)),
    autoescape=select_autoescape(["html", "xml"]),
)


def fmt_datetime(value):
    """Format datetime for templates."""
    try:
        return (
            datetime.fromtimestamp(value).strftime("%Y-%m-%d %H:%M:%S")
            if isinstance(value, (int, float))
            else value.strftime("%Y-%m-%d %H:%M:%S")
        )
    except (TypeError, ValueError, AttributeError, OSError):
        return str(value)


jinja_env.filters["datetime"] = fmt_datetime
jinja_env.filters["filesize"] = human_size


def render(name: str, **ctx) -> HTMLResponse:
    """Render template with context."""
    template = jinja_env.get_template(name)
    ctx.setdefault("title", "Meme Gallery")
    return HTMLResponse(template.render(**ctx))


class ReviewRequest(BaseModel):
    approved: int


def _read_upload(image: UploadFile, limit: int) -> bytes:
    """Read an uploaded image, enforcing type and size limits."""
    if not image.filename or not is_image_file(Path(safe_filename(image.filename))):
        raise HTTPException(400, "Invalid file type. Only images are allowed.")
    data = image.file.read(limit + 1)
    if len(data) > limit:
        raise HTTPException(413, f"File too large. Maximum size is {human_size(limit)}.")
    if not data:
        raise HTTPException(400, "Uploaded file is empty")
    return data


def _place_file(dest: Path, data: bytes = None, source: Path = None) -> None:
    """Write into ``dest``'s directory under a hidden name, then rename.

    The watcher ignores dotfiles, so it only sees the finished file.
    """
    dest.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=".incoming-", dir=dest.parent)
    try:
        with os.fdopen(fd, "wb") as fh:
            if source is not None:
                with source.open("rb") as src:
                    shutil.copyfileobj(src, fh)
            else:
                fh.write(data)
        os.replace(tmp_name, dest)
    except OSError:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


def index(request: Request):
    """Server-rendered gallery of processed images."""
    store = request.app.state.pipeline.store
    return render("gallery.html", images=store.records(), stats=store.stats())


def upload(request: Request, image: UploadFile = File(...)):
    """Drop an uploaded image into the watched input directory."""
    config = request.app.state.config
    pipeline = request.app.state.pipeline
    data = _read_upload(image, config.max_upload_bytes)
    filename = safe_filename(image.filename)
    try:
        _place_file(config.input_dir / filename, data=data)
    except OSError as exc:
        raise HTTPException(500, f"Upload failed: {exc}")
    return {
        "success": True,
        "message": "Image uploaded and will be processed automatically",
        "filename": filename,
        "processedName": pipeline.output_name(Path(filename)),
        "size": len(data),
    }


def api_images(request: Request):
    """All records in the library manifest."""
    return [r.to_json() for r in request.app.state.pipeline.store.records()]


def api_stats(request: Request):
    """Library totals, human readable, plus the raw byte counts."""
    stats = request.app.state.pipeline.store.stats()
    return {
        "totalImages": stats.total_images,
        "totalOriginalSize": human_size(stats.total_original_size),
        "totalOptimizedSize": human_size(stats.total_optimized_size),
        "totalThumbnailSize": human_size(stats.total_thumbnail_size),
        "totalSaved": human_size(stats.total_saved),
        "avgCompression": f"{stats.avg_compression}%",
        "raw": stats.model_dump(by_alias=True),
    }


def process_file(request: Request, filename: str):
    """Force (re)processing of one file in the input directory."""
    config = request.app.state.config
    pipeline = request.app.state.pipeline
    input_dir = config.input_dir.resolve()
    path = resolve_under_root(input_dir, input_dir / filename)
    if not path.is_file():
        raise HTTPException(404, "File not found")
    if not is_image_file(path):
        raise HTTPException(400, "Not a supported image file")

    future = pipeline.submit(path, force=True)
    if future is None:
        raise HTTPException(409, "File is already being processed")
    result = future.result()
    if not result.ok:
        raise HTTPException(500, f"Processing failed: {result.error}")
    return {"success": True, "image": result.record.to_json()}


def health(request: Request):
    """Liveness plus manifest durability."""
    pipeline = request.app.state.pipeline
    return {
        "status": "OK" if pipeline.healthy else "DEGRADED",
        "manifestDirty": pipeline.store.dirty,
        "images": len(pipeline.store),
        "lastSweep": get_setting("last_sweep"),
    }


def create_submission(
    request: Request,
    image: UploadFile = File(...),
    text: str = Form(""),
    timestamp: Optional[str] = Form(None),
):
    """Store a visitor submission for review."""
    config = request.app.state.config
    if not text.strip():
        raise HTTPException(400, "Text is required")
    data = _read_upload(image, config.max_upload_bytes)
    original_name = safe_filename(image.filename)
    stored_name = f"meme-{int(time.time() * 1000)}-{secrets.randbelow(10**9)}{Path(original_name).suffix.lower()}"
    try:
        _place_file(config.submissions_dir / stored_name, data=data)
    except OSError as exc:
        raise HTTPException(500, f"Failed to save submission: {exc}")

    row = add_submission(Submission(
        filename=stored_name,
        original_name=original_name,
        user_text=text.strip(),
        timestamp=timestamp,
    ))
    return {
        "success": True,
        "id": row.id,
        "message": "Submission received! It will be reviewed for approval.",
    }


def admin_submissions():
    """Every submission, newest first."""
    return [row.model_dump(mode="json") for row in list_submissions()]


def review_submission(request: Request, submission_id: int, review: ReviewRequest):
    """Approve (1) or reject (0) a submission.

    Approved images are copied into the pipeline input directory under their
    original name, where the watcher picks them up.
    """
    if review.approved not in (0, 1):
        raise HTTPException(400, "Approved must be 0 or 1")
    row = set_submission_approval(submission_id, bool(review.approved))
    if row is None:
        raise HTTPException(404, "Submission not found")

    if row.approved:
        config = request.app.state.config
        source = config.submissions_dir / row.filename
        if not source.is_file():
            raise HTTPException(404, "Submitted file missing on disk")
        try:
            _place_file(config.input_dir / safe_filename(row.original_name), source=source)
        except OSError as exc:
            raise HTTPException(500, f"Failed to publish approved file: {exc}")

    return {
        "success": True,
        "message": "Submission approved" if row.approved else "Submission rejected",
    }


def approved_memes():
    """Approved submissions for the public site."""
    return [
        {"original_name": r.original_name, "user_text": r.user_text, "timestamp": r.timestamp}
        for r in list_submissions(approved_only=True)
    ]
