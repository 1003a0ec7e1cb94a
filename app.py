"""
Meme Gallery – image ingestion service (FastAPI + SQLite)

Quick start
-----------
1) python -m venv .venv && source .venv/bin/activate  # or .venv\\Scripts\\activate on Windows
2) pip install -e .
3) python app.py  # auto-writes templates/static, DB and output folders
4) Drop images into ./uploads (or POST them to /upload) and open http://localhost:3001

Notes
-----
• Every image is re-encoded to JPEG: ./public/images (max 1024×768) and ./public/thumbnails (max 400×300).
• The library manifest lives in ./public/imageLibrary.json; the gallery reads ./public/imageConfig.json.
• Settings come from MEME_* environment variables, e.g. MEME_QUALITY=80 or MEME_THUMBNAIL_BOX=320x240.
"""

import logging
import os
import signal
import sys
import threading
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import HTMLResponse
from fastapi.staticfiles import StaticFiles

from config import PipelineConfig, configure_logging
from database import configure_engine, init_db, set_setting
from errors import WatchError
from pipeline import ImagePipeline
from routes import (
    admin_submissions,
    api_images,
    api_stats,
    approved_memes,
    create_submission,
    health,
    index,
    process_file,
    review_submission,
    upload,
)
from templates_static import ensure_assets

logger = logging.getLogger(__name__)


def supervise(pipeline: ImagePipeline) -> None:
    """Keep the watcher alive; take the process down if it cannot be revived."""
    try:
        pipeline.run_forever(install_signals=False)
    except WatchError as exc:
        logger.critical("Directory watcher is gone, shutting down: %s", exc)
        os.kill(os.getpid(), signal.SIGTERM)


@asynccontextmanager
async def lifespan(app: FastAPI):
    config: PipelineConfig = app.state.config
    pipeline: ImagePipeline = app.state.pipeline

    configure_engine(config.db_path)
    init_db()
    config.submissions_dir.mkdir(parents=True, exist_ok=True)

    supervisor = None
    if app.state.watch:
        await run_in_threadpool(pipeline.start)
        set_setting("last_sweep", datetime.now(timezone.utc).isoformat())
        supervisor = threading.Thread(target=supervise, args=(pipeline,), name="watch-supervisor", daemon=True)
        supervisor.start()
    else:
        pipeline.ensure_directories()
        pipeline.store.load()

    yield

    if supervisor is not None:
        # run_forever() calls stop() on its way out
        pipeline.request_stop()
        await run_in_threadpool(supervisor.join, 30)
    else:
        pipeline.stop()


def create_app(config: Optional[PipelineConfig] = None, watch: bool = True) -> FastAPI:
    """Build the app around one pipeline instance."""
    config = config or PipelineConfig.from_env()
    app = FastAPI(title="Meme Gallery", lifespan=lifespan)
    app.state.config = config
    app.state.pipeline = ImagePipeline(config)
    app.state.watch = watch

    # Ensure templates and static files exist
    static_dir = ensure_assets()

    # Routes
    app.get("/", response_class=HTMLResponse)(index)
    app.post("/upload")(upload)
    app.get("/api/images")(api_images)
    app.get("/api/stats")(api_stats)
    app.post("/api/process/{filename}")(process_file)
    app.get("/health")(health)

    # Submission workflow
    app.post("/api/submissions")(create_submission)
    app.get("/api/admin/submissions")(admin_submissions)
    app.patch("/api/admin/submissions/{submission_id}")(review_submission)
    app.get("/api/approved-memes")(approved_memes)

    # Mount static files
    app.mount("/static", StaticFiles(directory=str(static_dir)), name="static")
    app.mount(
        config.images_url_prefix,
        StaticFiles(directory=str(config.optimized_dir), check_dir=False),
        name="images",
    )
    app.mount(
        config.thumbnails_url_prefix,
        StaticFiles(directory=str(config.thumbnail_dir), check_dir=False),
        name="thumbnails",
    )
    return app


app = create_app()


if __name__ == "__main__":
    # Allow `python app.py 3001`
    port = int(sys.argv[1]) if len(sys.argv) > 1 else 3001
    configure_logging(app.state.config.log_level)
    print(f"→ Open http://localhost:{port}")
    import uvicorn

    uvicorn.run("app:app", host="127.0.0.1", port=port)
