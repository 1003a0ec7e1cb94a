"""Image ingestion pipeline: watch, resize, record."""
import logging
import os
import signal
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional

from config import OUTPUT_EXT, PipelineConfig
from encoder import JpegEncoder, fit_within
from errors import ManifestIOError, PipelineError
from manifest import ManifestStore
from models import DimensionSet, ImageRecord, Size, utcnow
from scanner import file_mtime, is_image_file, iter_image_files, read_image_meta
from utils import human_size, normalize_name
from watcher import DirectoryWatcher, WatchEvent, WatchHandle

logger = logging.getLogger(__name__)


class FileState(str, Enum):
    UNSEEN = "unseen"
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class ProcessResult:
    """Outcome of one attempt at a source file."""
    path: Path
    name: str
    state: FileState
    record: Optional[ImageRecord] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.state in (FileState.PROCESSED, FileState.SKIPPED)


def compression_percent(original: int, optimized: int) -> float:
    if original <= 0:
        return 0.0
    return round((original - optimized) / original * 100, 1)


class ImagePipeline:
    """Turns files dropped in the input directory into optimized JPEGs,
    thumbnails and manifest records.

    Files are processed on a small thread pool. A path is never processed by
    two workers at once: a repeat event for a busy path is queued and replayed
    when the running attempt finishes, where the skip guard usually drops it.
    """

    def __init__(
        self,
        config: PipelineConfig,
        store: Optional[ManifestStore] = None,
        watcher: Optional[DirectoryWatcher] = None,
        encoder: Optional[JpegEncoder] = None,
    ):
        self.config = config
        self.store = store or ManifestStore(config.manifest_path)
        self.watcher = watcher or DirectoryWatcher(
            polling=config.polling,
            poll_interval=config.poll_interval,
            max_restarts=config.max_watch_restarts,
        )
        self.encoder = encoder or JpegEncoder(config.quality)
        self._executor: Optional[ThreadPoolExecutor] = None
        self._handle: Optional[WatchHandle] = None
        self._lock = threading.Lock()
        self._in_flight: set[Path] = set()
        self._rerun: set[Path] = set()
        self._states: dict[Path, FileState] = {}
        self._accepting = False
        self._stop_event = threading.Event()

    # -------------------------------
    # Single file
    # -------------------------------
    def output_name(self, path: Path) -> str:
        return normalize_name(Path(path).name)

    def state_of(self, path: Path) -> FileState:
        return self._states.get(Path(path).resolve(), FileState.UNSEEN)

    def is_up_to_date(self, path: Path) -> bool:
        """True when the manifest already reflects the file's current contents."""
        record = self.store.get(self.output_name(path))
        if record is None:
            return False
        try:
            return record.processed >= file_mtime(Path(path))
        except OSError:
            return False

    def build_record(self, name: str, meta, optimized: tuple[int, int], thumbnail: tuple[int, int],
                     optimized_path: Path, thumbnail_path: Path,
                     processed: Optional[datetime] = None) -> ImageRecord:
        filename = f"{name}{OUTPUT_EXT}"
        optimized_size = optimized_path.stat().st_size
        return ImageRecord(
            name=name,
            filename=filename,
            extension=OUTPUT_EXT.lstrip("."),
            url=f"{self.config.images_url_prefix}/{filename}",
            thumbnail_url=f"{self.config.thumbnails_url_prefix}/{filename}",
            original_size=meta.size,
            optimized_size=optimized_size,
            thumbnail_size=thumbnail_path.stat().st_size,
            dimensions=DimensionSet(
                original=Size(width=meta.width, height=meta.height),
                optimized=Size(width=optimized[0], height=optimized[1]),
                thumbnail=Size(width=thumbnail[0], height=thumbnail[1]),
            ),
            compression=compression_percent(meta.size, optimized_size),
            processed=processed or utcnow(),
        )

    def process_image(self, path: Path, force: bool = False) -> ProcessResult:
        """Process one source file. Never raises for per-file problems."""
        path = Path(path).resolve()
        name = self.output_name(path)
        if not force and self.is_up_to_date(path):
            logger.info("Skipping %s (already processed)", name)
            self._states[path] = FileState.SKIPPED
            return ProcessResult(path, name, FileState.SKIPPED, record=self.store.get(name))

        self._states[path] = FileState.PROCESSING
        # a source rewritten after this point has a newer mtime and is redone
        started = utcnow()
        filename = f"{name}{OUTPUT_EXT}"
        optimized_path = self.config.optimized_dir / filename
        thumbnail_path = self.config.thumbnail_dir / filename
        staged = [p.with_name(f".{p.name}.new") for p in (optimized_path, thumbnail_path)]
        try:
            meta = read_image_meta(path)
            optimized = fit_within(meta.width, meta.height, self.config.optimized_box)
            thumbnail = fit_within(meta.width, meta.height, self.config.thumbnail_box)
            self.encoder.resize(path, self.config.optimized_box, staged[0])
            self.encoder.resize(path, self.config.thumbnail_box, staged[1])
            record = self.build_record(name, meta, optimized, thumbnail, *staged, processed=started)
            # both derivatives exist; swap them in together
            os.replace(staged[0], optimized_path)
            os.replace(staged[1], thumbnail_path)
        except (PipelineError, OSError) as exc:
            for p in staged:
                p.unlink(missing_ok=True)
            logger.error("Failed to process %s: %s", path, exc)
            self._states[path] = FileState.FAILED
            return ProcessResult(path, name, FileState.FAILED, error=str(exc))

        with self.store.lock:
            self.store.upsert(record)
            self.save()

        self._states[path] = FileState.PROCESSED
        logger.info(
            "Processed %s: %s (%dx%d) -> %s (%dx%d), thumbnail %s (%dx%d), saved %.1f%%",
            name,
            human_size(record.original_size), meta.width, meta.height,
            human_size(record.optimized_size), *optimized,
            human_size(record.thumbnail_size), *thumbnail,
            record.compression,
        )
        return ProcessResult(path, name, FileState.PROCESSED, record=record)

    def save(self) -> bool:
        """Persist the manifest and refresh the gallery config.

        A failed write is logged, not raised: the in-memory map stays correct
        and ``store.dirty`` keeps the update pending for the next save.
        """
        with self.store.lock:
            try:
                self.store.persist()
                if self.config.gallery_config_path:
                    self.store.export_gallery_config(self.config.gallery_config_path)
            except ManifestIOError as exc:
                logger.error("%s", exc)
                return False
        return True

    # -------------------------------
    # Scheduling
    # -------------------------------
    def _ensure_executor(self) -> ThreadPoolExecutor:
        with self._lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self.config.max_workers, thread_name_prefix="image-worker"
                )
            return self._executor

    def submit(self, path: Path, force: bool = False) -> Optional[Future]:
        """Queue a file for processing; returns None when it is already running."""
        path = Path(path).resolve()
        executor = self._ensure_executor()
        with self._lock:
            if path in self._in_flight:
                self._rerun.add(path)
                logger.debug("%s already in flight, queued a rerun", path.name)
                return None
            self._in_flight.add(path)
        try:
            future = executor.submit(self.process_image, path, force)
        except RuntimeError:
            # executor was shut down between lookup and submit
            with self._lock:
                self._in_flight.discard(path)
            return None
        future.add_done_callback(lambda f, p=path: self._finished(p, f))
        return future

    def _finished(self, path: Path, future: Future) -> None:
        with self._lock:
            self._in_flight.discard(path)
            again = path in self._rerun and self._accepting
            self._rerun.discard(path)
        if future.cancelled():
            self._states.pop(path, None)
            return
        exc = future.exception()
        if exc is not None:
            logger.error("Unexpected error processing %s: %s", path, exc, exc_info=exc)
            self._states[path] = FileState.FAILED
        if again:
            self.submit(path)

    def process_existing(self) -> list[ProcessResult]:
        """Process every qualifying file currently in the input directory."""
        input_dir = self.config.input_dir
        try:
            files = list(iter_image_files(input_dir))
        except OSError as exc:
            logger.error("Cannot list %s: %s", input_dir, exc)
            return []
        logger.info("Found %d images in %s", len(files), input_dir)

        pending = [(p, self.submit(p)) for p in files]
        results = []
        for path, future in pending:
            if future is None or future.cancelled():
                continue
            exc = future.exception()
            if exc is None:
                results.append(future.result())
            else:
                results.append(ProcessResult(
                    path.resolve(), self.output_name(path), FileState.FAILED, error=str(exc)
                ))
        return results

    def reconcile(self) -> list[str]:
        """Drop records (and their derivatives) whose source file is gone."""
        present = {self.output_name(p) for p in iter_image_files(self.config.input_dir)}
        removed = []
        with self.store.lock:
            for name in sorted(self.store.names() - present):
                record = self.store.remove(name)
                if record is None:
                    continue
                for directory in (self.config.optimized_dir, self.config.thumbnail_dir):
                    (directory / record.filename).unlink(missing_ok=True)
                removed.append(name)
            if removed:
                self.save()
        for name in removed:
            logger.info("Pruned orphaned record %s", name)
        return removed

    # -------------------------------
    # Lifecycle
    # -------------------------------
    def ensure_directories(self) -> None:
        for directory in self.config.output_dirs():
            if not directory.exists():
                directory.mkdir(parents=True, exist_ok=True)
                logger.info("Created directory %s", directory)

    def _on_event(self, event: WatchEvent) -> None:
        if not self._accepting or not is_image_file(event.path):
            return
        logger.info("Image %s: %s", event.kind.value, event.path.name)
        self.submit(event.path)

    def start(self) -> list[ProcessResult]:
        """Load the manifest, sweep the input directory and start watching."""
        self.ensure_directories()
        self.store.load()
        self._accepting = True
        self._stop_event.clear()
        if self.config.prune_orphans:
            self.reconcile()
        # watch before sweeping so files arriving mid-sweep raise events
        self._handle = self.watcher.subscribe(self.config.input_dir, self._on_event)
        logger.info("Watching %s", self.config.input_dir)
        results = self.process_existing()
        self.save()
        logger.info("Image pipeline started")
        return results

    def stop(self, wait: bool = True) -> None:
        """Stop taking events and let running work finish (or cancel queued work)."""
        self._accepting = False
        self._stop_event.set()
        if self._handle is not None:
            self.watcher.unsubscribe(self._handle)
            self._handle = None
        with self._lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=wait, cancel_futures=not wait)
        if self.store.dirty:
            self.save()
        logger.info("Image pipeline stopped")

    def request_stop(self) -> None:
        """Ask a blocking ``run_forever()`` to return."""
        self._stop_event.set()

    def run_forever(self, install_signals: bool = True) -> None:
        """Block, keeping the watcher healthy, until ``stop()`` or a signal."""
        if install_signals:
            for sig in (signal.SIGINT, signal.SIGTERM):
                signal.signal(sig, lambda signum, frame: self.request_stop())
        try:
            while not self._stop_event.wait(self.config.poll_interval):
                self.watcher.check()
                if self.store.dirty:
                    self.save()
        finally:
            self.stop()

    @property
    def healthy(self) -> bool:
        return not self.store.dirty
