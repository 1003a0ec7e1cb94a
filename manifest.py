"""JSON-backed library manifest."""
import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Iterable, Optional

from pydantic import ValidationError

from errors import ManifestIOError
from models import ImageRecord, LibraryStats

logger = logging.getLogger(__name__)


def write_json_atomic(path: Path, payload) -> None:
    """Write pretty-printed JSON via a temp file and an atomic rename."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}-", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(payload, fh, indent=2, ensure_ascii=False)
            fh.write("\n")
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


class ManifestStore:
    """Name-keyed map of ``ImageRecord`` persisted as a JSON array.

    The store is the only writer of the manifest file. ``lock`` serializes
    callers that need upsert and persist to happen together.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self.lock = threading.RLock()
        self._records: dict[str, ImageRecord] = {}
        self.dirty = False

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, name: str) -> bool:
        return name in self._records

    def get(self, name: str) -> Optional[ImageRecord]:
        return self._records.get(name)

    def records(self) -> list[ImageRecord]:
        """All records, ordered by name."""
        with self.lock:
            return [self._records[k] for k in sorted(self._records)]

    def names(self) -> set[str]:
        with self.lock:
            return set(self._records)

    def load(self) -> dict[str, ImageRecord]:
        """Replace the in-memory map with the file contents.

        A missing or unparsable file yields an empty manifest. Entries that do
        not validate are skipped.
        """
        records: dict[str, ImageRecord] = {}
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            logger.info("No manifest at %s, starting fresh", self.path)
            raw = []
        except (OSError, ValueError) as exc:
            logger.warning("Manifest %s unreadable, starting fresh: %s", self.path, exc)
            raw = []

        if not isinstance(raw, list):
            logger.warning("Manifest %s is not a JSON array, starting fresh", self.path)
            raw = []

        for item in raw:
            try:
                record = ImageRecord.model_validate(item)
            except ValidationError as exc:
                logger.warning("Skipping invalid manifest entry %r: %s", item, exc)
                continue
            records[record.name] = record

        with self.lock:
            self._records = records
            self.dirty = False
        logger.info("Loaded %d images from manifest", len(records))
        return dict(records)

    def upsert(self, record: ImageRecord) -> None:
        """Insert or replace the record keyed by ``record.name``."""
        with self.lock:
            self._records[record.name] = record
            self.dirty = True

    def remove(self, name: str) -> Optional[ImageRecord]:
        with self.lock:
            record = self._records.pop(name, None)
            if record is not None:
                self.dirty = True
            return record

    def persist(self) -> None:
        """Write the whole map back to disk.

        Raises ``ManifestIOError`` if the file cannot be written; the
        in-memory map is kept and ``dirty`` stays set until a later persist
        succeeds.
        """
        with self.lock:
            payload = [r.to_json() for r in self.records()]
            try:
                write_json_atomic(self.path, payload)
            except OSError as exc:
                raise ManifestIOError(f"Cannot write manifest {self.path}: {exc}") from exc
            self.dirty = False
        logger.debug("Saved %d images to manifest", len(payload))

    def stats(self) -> LibraryStats:
        """Byte totals and overall compression across every record."""
        records = self.records()
        total_original = sum(r.original_size for r in records)
        total_optimized = sum(r.optimized_size for r in records)
        total_thumbnails = sum(r.thumbnail_size for r in records)
        saved = total_original - total_optimized
        avg = round(saved / total_original * 100, 1) if total_original else 0.0
        return LibraryStats(
            total_images=len(records),
            total_original_size=total_original,
            total_optimized_size=total_optimized,
            total_thumbnail_size=total_thumbnails,
            total_saved=saved,
            avg_compression=avg,
        )

    def export_gallery_config(self, path: Path, records: Optional[Iterable[ImageRecord]] = None) -> None:
        """Write the slim image list the gallery front end loads."""
        records = self.records() if records is None else list(records)
        try:
            write_json_atomic(path, [r.gallery_entry() for r in records])
        except OSError as exc:
            raise ManifestIOError(f"Cannot write gallery config {path}: {exc}") from exc
        logger.info("Wrote gallery config with %d images to %s", len(records), path)
