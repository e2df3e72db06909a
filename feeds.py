"""Feed sources that push candidate files onto the import work queue."""

from __future__ import annotations

import logging
import os
import threading
import time
from pathlib import Path
from typing import Dict, Iterable, Iterator, Optional, Sequence, Tuple

from tqdm import tqdm
from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from import_pipeline import WorkQueue, WorkQueueClosed

logger = logging.getLogger("shoko-importer.feeds")

DEFAULT_EXTENSIONS = (".mkv",)
DEFAULT_DEBOUNCE_SECONDS = 10.0
_FLUSH_INTERVAL = 0.5


def normalize_extensions(exts: Optional[Iterable[str]]) -> Tuple[str, ...]:
    if not exts:
        return DEFAULT_EXTENSIONS
    normalized = []
    for ext in exts:
        ext = ext.strip().lower()
        if not ext:
            continue
        if not ext.startswith('.'):
            ext = f'.{ext}'
        if ext not in normalized:
            normalized.append(ext)
    return tuple(normalized) or DEFAULT_EXTENSIONS


def glob_pattern(ext: str) -> str:
    """Return a recursive glob matching *ext* regardless of case, e.g. ``**/*.[mM][kK][vV]``."""

    letters = []
    for char in ext.lstrip('.'):
        if char.isalpha():
            letters.append(f"[{char.lower()}{char.upper()}]")
        else:
            letters.append(char)
    return f"**/*.{''.join(letters)}"


def has_extension(path: Path, extensions: Sequence[str]) -> bool:
    return path.suffix.lower() in extensions


def iter_media_files(root: Path, extensions: Sequence[str]) -> Iterator[Path]:
    seen = set()
    for ext in extensions:
        pattern = glob_pattern(ext)
        logger.info("Processing folder %s with glob pattern %s", root, pattern)
        for candidate in root.glob(pattern):
            if candidate in seen:
                continue
            seen.add(candidate)
            if not candidate.is_file():
                logger.debug("Ignore non-file %s", candidate)
                continue
            yield candidate


def scan_directories(
    work_queue: WorkQueue,
    watch_dirs: Sequence[Path],
    extensions: Sequence[str] = DEFAULT_EXTENSIONS,
    show_progress: bool = True,
) -> int:
    """Enqueue every matching file below *watch_dirs*; return how many were queued."""

    queued = 0
    progress = tqdm(unit="file", desc="scan", disable=not show_progress)
    try:
        for root in watch_dirs:
            root = Path(root)
            for src_file in iter_media_files(root, extensions):
                work_queue.put(src_file, root)
                queued += 1
                progress.update(1)
    finally:
        progress.close()
    logger.debug("Scan queued %d file(s)", queued)
    return queued


class _DebouncingEventHandler(FileSystemEventHandler):
    """Record the last event time of every path below one watch root."""

    def __init__(self, watcher: "DebouncedWatcher", root: Path) -> None:
        super().__init__()
        self._watcher = watcher
        self._root = root

    def _record(self, path: Optional[str]) -> None:
        if path:
            self._watcher.touch(Path(os.fsdecode(path)), self._root)

    def on_created(self, event) -> None:
        if not event.is_directory:
            self._record(event.src_path)

    def on_modified(self, event) -> None:
        if not event.is_directory:
            self._record(event.src_path)

    def on_moved(self, event) -> None:
        if not event.is_directory:
            self._record(getattr(event, "dest_path", None))

    def on_deleted(self, event) -> None:
        if not event.is_directory:
            self._record(event.src_path)


class DebouncedWatcher:
    """Watch roots with watchdog and enqueue files once their events go quiet.

    A path is emitted after *delay* seconds without a new event for it. At
    that point it must still be a regular file with one of *extensions*.
    """

    def __init__(
        self,
        work_queue: WorkQueue,
        watch_dirs: Sequence[Path],
        extensions: Sequence[str] = DEFAULT_EXTENSIONS,
        delay: float = DEFAULT_DEBOUNCE_SECONDS,
    ) -> None:
        if not watch_dirs:
            raise ValueError("At least one watch directory must be provided")
        self.work_queue = work_queue
        self.roots = tuple(Path(p) for p in watch_dirs)
        self.extensions = tuple(extensions)
        self.delay = delay
        self._pending: Dict[Path, Tuple[float, Path]] = {}
        self._lock = threading.Lock()
        self._stop_requested = threading.Event()
        self._observer = Observer()
        self._flusher: Optional[threading.Thread] = None
        self._started = False

    def __enter__(self) -> "DebouncedWatcher":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def start(self) -> None:
        for root in self.roots:
            logger.info("Processing folder in watch mode %s", root)
            self._observer.schedule(_DebouncingEventHandler(self, root), str(root), recursive=True)
        self._observer.start()
        self._started = True
        self._stop_requested.clear()
        self._flusher = threading.Thread(target=self._flush_loop, name="watch-debouncer", daemon=True)
        self._flusher.start()

    def close(self) -> None:
        self._stop_requested.set()
        if self._started:
            logger.debug("Stopping watchdog observer")
            self._observer.stop()
            self._observer.join(timeout=5)
            self._started = False
        if self._flusher is not None:
            self._flusher.join(timeout=5)
            self._flusher = None

    def touch(self, path: Path, root: Path, now: Optional[float] = None) -> None:
        stamp = time.monotonic() if now is None else now
        with self._lock:
            self._pending[path] = (stamp, root)

    @property
    def pending(self) -> int:
        with self._lock:
            return len(self._pending)

    def due(self, now: Optional[float] = None) -> list[Tuple[Path, Path]]:
        """Pop and return ``(path, root)`` pairs whose quiet period has elapsed."""

        current = time.monotonic() if now is None else now
        ready: list[Tuple[Path, Path]] = []
        with self._lock:
            for path, (stamp, root) in list(self._pending.items()):
                if current - stamp >= self.delay:
                    del self._pending[path]
                    ready.append((path, root))
        return ready

    def flush(self, now: Optional[float] = None) -> int:
        """Enqueue due paths that are still matching files; return how many were queued."""

        queued = 0
        for path, root in self.due(now):
            try:
                is_file = path.is_file()
            except OSError as exc:
                logger.warning("Ignore unreadable path %s: %s", path, exc)
                continue
            if not is_file:
                logger.debug("Ignore deleted file %s", path)
                continue
            if not has_extension(path, self.extensions):
                logger.debug("Ignore file %s", path)
                continue
            self.work_queue.put(path, root)
            queued += 1
        return queued

    def _flush_loop(self) -> None:
        while not self._stop_requested.wait(_FLUSH_INTERVAL):
            try:
                self.flush()
            except WorkQueueClosed:
                logger.debug("Work queue closed; stopping debouncer")
                return
            except Exception:
                logger.exception("Unexpected error while flushing watched files")
