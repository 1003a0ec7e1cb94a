"""Exceptions raised by the image pipeline."""
from pathlib import Path
from typing import Optional


class PipelineError(Exception):
    """Base class for pipeline failures."""


class UnreadableSourceError(PipelineError):
    """Source file is missing, not readable, or not a decodable image."""

    def __init__(self, path: Path, reason: str):
        self.path = Path(path)
        self.reason = reason
        super().__init__(f"{self.path}: {reason}")


class MetadataError(UnreadableSourceError):
    """Metadata could not be read from a source image."""


class EncodeError(PipelineError):
    """Resizing or re-encoding an image failed."""

    def __init__(self, source: Path, destination: Optional[Path], reason: str):
        self.source = Path(source)
        self.destination = Path(destination) if destination else None
        self.reason = reason
        target = f" -> {self.destination}" if self.destination else ""
        super().__init__(f"{self.source}{target}: {reason}")


class ManifestIOError(PipelineError):
    """The manifest file could not be read or written."""


class WatchError(PipelineError):
    """The directory watch could not be kept alive."""
