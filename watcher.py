"""Directory watching on top of watchdog."""
import itertools
import logging
import os
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer
from watchdog.observers.polling import PollingObserver

from errors import WatchError
from scanner import is_image_file

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    CREATED = "created"
    MODIFIED = "modified"


@dataclass(frozen=True)
class WatchEvent:
    kind: EventKind
    path: Path


EventCallback = Callable[[WatchEvent], None]


class _ImageEventHandler(FileSystemEventHandler):
    """Turns watchdog events into ``WatchEvent`` for image files only."""

    def __init__(self, on_event: EventCallback):
        super().__init__()
        self.on_event = on_event

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._emit(EventKind.CREATED, event.src_path)

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._emit(EventKind.MODIFIED, event.src_path)

    def on_closed(self, event: FileSystemEvent) -> None:
        # inotify reports the end of a write separately from the modifications
        if not event.is_directory:
            self._emit(EventKind.MODIFIED, event.src_path)

    def on_moved(self, event: FileSystemEvent) -> None:
        # uploads that land via rename show up as a move into the directory
        if not event.is_directory:
            self._emit(EventKind.CREATED, event.dest_path)

    def _emit(self, kind: EventKind, raw_path) -> None:
        path = Path(os.fsdecode(raw_path))
        if not is_image_file(path):
            return
        try:
            self.on_event(WatchEvent(kind, path))
        except Exception:
            logger.exception("Watch callback failed for %s", path)


@dataclass
class WatchHandle:
    """A live subscription returned by ``DirectoryWatcher.subscribe``."""
    id: int
    directory: Path
    on_event: EventCallback
    observer: Optional[object] = None
    started_at: float = field(default_factory=time.monotonic)
    failures: int = 0


class DirectoryWatcher:
    """Subscribe callbacks to create/modify events in a directory.

    Each subscription runs its own observer thread. ``check()`` restarts
    observers that died and raises ``WatchError`` once a subscription has
    failed ``max_restarts`` times without staying up for ``stable_after``
    seconds in between.
    """

    def __init__(
        self,
        polling: bool = False,
        poll_interval: float = 1.0,
        max_restarts: int = 3,
        stable_after: float = 30.0,
    ):
        self.polling = polling
        self.poll_interval = poll_interval
        self.max_restarts = max_restarts
        self.stable_after = stable_after
        self._handles: dict[int, WatchHandle] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def _new_observer(self):
        if self.polling:
            return PollingObserver(timeout=self.poll_interval)
        return Observer(timeout=self.poll_interval)

    def _start(self, handle: WatchHandle) -> None:
        if not handle.directory.is_dir():
            raise WatchError(f"Watch directory does not exist: {handle.directory}")
        observer = self._new_observer()
        observer.schedule(_ImageEventHandler(handle.on_event), str(handle.directory), recursive=False)
        try:
            observer.start()
        except OSError as exc:
            raise WatchError(f"Cannot watch {handle.directory}: {exc}") from exc
        handle.observer = observer
        handle.started_at = time.monotonic()

    @staticmethod
    def _halt(handle: WatchHandle, timeout: Optional[float] = 5.0) -> None:
        observer = handle.observer
        handle.observer = None
        if observer is None:
            return
        observer.stop()
        if observer.is_alive():
            observer.join(timeout)

    def subscribe(self, directory: Path, on_event: EventCallback) -> WatchHandle:
        """Start delivering events for ``directory`` to ``on_event``."""
        handle = WatchHandle(id=next(self._ids), directory=Path(directory).resolve(), on_event=on_event)
        self._start(handle)
        with self._lock:
            self._handles[handle.id] = handle
        logger.info("Watching %s", handle.directory)
        return handle

    def unsubscribe(self, handle: WatchHandle) -> None:
        """Stop a subscription; no events are delivered after this returns."""
        with self._lock:
            self._handles.pop(handle.id, None)
        self._halt(handle)
        logger.info("Stopped watching %s", handle.directory)

    def close(self) -> None:
        for handle in list(self._handles.values()):
            self.unsubscribe(handle)

    @staticmethod
    def is_healthy(handle: WatchHandle) -> bool:
        observer = handle.observer
        if observer is None or not observer.is_alive() or not handle.directory.is_dir():
            return False
        return all(emitter.is_alive() for emitter in observer.emitters)

    def check(self) -> None:
        """Restart dead subscriptions; raise ``WatchError`` on repeated failure."""
        with self._lock:
            handles = list(self._handles.values())
        for handle in handles:
            if self.is_healthy(handle):
                if handle.failures and time.monotonic() - handle.started_at >= self.stable_after:
                    handle.failures = 0
                continue

            handle.failures += 1
            logger.error(
                "Watcher for %s is down (failure %d/%d)",
                handle.directory, handle.failures, self.max_restarts,
            )
            if handle.failures > self.max_restarts:
                raise WatchError(
                    f"Watcher for {handle.directory} failed {handle.failures} times in a row"
                )
            self._halt(handle, timeout=1.0)
            try:
                self._start(handle)
            except WatchError as exc:
                logger.error("Could not restart watcher: %s", exc)
            else:
                logger.warning("Restarted watcher for %s", handle.directory)

    @property
    def subscriptions(self) -> list[WatchHandle]:
        with self._lock:
            return list(self._handles.values())
