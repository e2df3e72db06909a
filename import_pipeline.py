"""Work queue and worker pool that import each queued file at most once at a time.

Feed sources push ``(file, source_dir)`` pairs onto a bounded
:class:`WorkQueue`. :class:`ImportWorkerPool` pulls them one at a time and
hands them to a thread pool. Before processing, a worker claims the file path
in a :class:`ClaimSet`; a second item for a path that is still in flight is
dropped without being reported. The claim only covers concurrent work: the
same path may be processed again later, and the processed-file store keeps
that idempotent.
"""

from __future__ import annotations

import logging
import os
import queue
import threading
from abc import ABC, abstractmethod
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Deque, Optional, Set, Union

from linker import link_file
from processed_store import ProcessedFileStore

logger = logging.getLogger("shoko-importer.pipeline")

DEFAULT_PARALLEL = 8
DEFAULT_QUEUE_SIZE = 100

TRACE = 5
logging.addLevelName(TRACE, "TRACE")

PathLike = Union[str, os.PathLike]


class WorkQueueClosed(Exception):
    """Raised by :class:`WorkQueue` once it is closed."""


@dataclass(frozen=True)
class WorkItem:
    file: Path
    source_dir: Path


IMPORTED = "imported"
SKIPPED = "skipped"
ERROR = "error"


@dataclass(frozen=True)
class ImportOutcome:
    status: str
    error: Optional[BaseException] = None

    @classmethod
    def imported(cls) -> "ImportOutcome":
        return cls(IMPORTED)

    @classmethod
    def skipped(cls) -> "ImportOutcome":
        return cls(SKIPPED)

    @classmethod
    def failed(cls, error: BaseException) -> "ImportOutcome":
        return cls(ERROR, error)

    @property
    def ok(self) -> bool:
        return self.status != ERROR


class WorkQueue:
    """Bounded producer/consumer queue of :class:`WorkItem` objects.

    Once closed, producers fail immediately, including those blocked on a
    full queue, and consumers fail after the queued items are drained.
    A *maxsize* of zero or less means unbounded.
    """

    def __init__(self, maxsize: int = DEFAULT_QUEUE_SIZE) -> None:
        self.maxsize = maxsize
        self._items: Deque[WorkItem] = deque()
        self._cond = threading.Condition(threading.Lock())
        self._closed = False

    def _full(self) -> bool:
        return 0 < self.maxsize <= len(self._items)

    def put(self, file: PathLike, source_dir: PathLike) -> WorkItem:
        item = WorkItem(Path(file), Path(source_dir))
        with self._cond:
            while not self._closed and self._full():
                self._cond.wait()
            if self._closed:
                raise WorkQueueClosed("work queue is closed")
            self._items.append(item)
            self._cond.notify_all()
        return item

    def get(self, timeout: Optional[float] = None) -> WorkItem:
        """Remove and return the oldest item.

        Raises :class:`WorkQueueClosed` once the queue is closed and empty,
        or :class:`queue.Empty` if *timeout* elapses first.
        """

        with self._cond:
            if not self._cond.wait_for(lambda: self._items or self._closed, timeout):
                raise queue.Empty
            if not self._items:
                raise WorkQueueClosed("work queue is closed")
            item = self._items.popleft()
            self._cond.notify_all()
            return item

    def close(self) -> None:
        """Stop accepting items; consumers fail once the remaining items are drained."""

        with self._cond:
            self._closed = True
            self._cond.notify_all()


class ClaimSet:
    """Paths currently owned by a worker."""

    def __init__(self) -> None:
        self._claims: Set[str] = set()
        self._lock = threading.Lock()

    def claim(self, key: str) -> bool:
        with self._lock:
            if key in self._claims:
                return False
            self._claims.add(key)
            return True

    def release(self, key: str) -> None:
        with self._lock:
            self._claims.discard(key)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._claims

    def __len__(self) -> int:
        with self._lock:
            return len(self._claims)


class ImportHandler(ABC):
    """What a worker does with a claimed item and how it reports the result."""

    @abstractmethod
    def process(self, item: WorkItem) -> ImportOutcome:
        """Import *item*; raise to signal failure."""

    @abstractmethod
    def report(self, item: WorkItem, outcome: ImportOutcome) -> None:
        """Observe the outcome of :meth:`process`. Must not change any state the pipeline relies on."""


class ImportWorkerPool:
    def __init__(
        self,
        handler: ImportHandler,
        work_queue: WorkQueue,
        parallel: int = DEFAULT_PARALLEL,
    ) -> None:
        if parallel < 1:
            raise ValueError("parallel must be at least 1")
        self.handler = handler
        self.work_queue = work_queue
        self.parallel = parallel
        self.claims = ClaimSet()
        self._slots = threading.BoundedSemaphore(parallel)
        self._executor = ThreadPoolExecutor(
            max_workers=parallel, thread_name_prefix="import-worker"
        )

    def process_once(self) -> None:
        """Dispatch one queued item to a worker without waiting for it to finish.

        Blocks until an item is available and a worker slot is free. Raises
        :class:`WorkQueueClosed` when the queue has been closed and drained.
        """

        item = self.work_queue.get()
        self._slots.acquire()
        try:
            self._executor.submit(self._run_item, item)
        except BaseException:
            self._slots.release()
            raise

    def _run_item(self, item: WorkItem) -> None:
        try:
            self._process_item(item)
        except Exception:
            logger.exception("Unexpected error while handling %s", item.file)
        finally:
            self._slots.release()

    def _process_item(self, item: WorkItem) -> None:
        key = str(item.file)
        if not self.claims.claim(key):
            logger.debug("Dropping %s, already being processed", key)
            return
        try:
            try:
                outcome = self.handler.process(item)
            except Exception as exc:
                outcome = ImportOutcome.failed(exc)
            self.handler.report(item, outcome)
        finally:
            self.claims.release(key)

    def run(self) -> None:
        """Dispatch items until the queue is closed, then wait for in-flight work."""

        try:
            while True:
                try:
                    self.process_once()
                except WorkQueueClosed as exc:
                    logger.info("Stop processing: %s", exc)
                    break
                logger.log(TRACE, "Dispatched 1 file")
        finally:
            self._executor.shutdown(wait=True)

    def start(self) -> threading.Thread:
        thread = threading.Thread(target=self.run, name="import-dispatcher", daemon=True)
        thread.start()
        return thread


def import_file(
    store: ProcessedFileStore,
    src_file: PathLike,
    src_base_dir: PathLike,
    dst_base_dir: PathLike,
) -> bool:
    """Link *src_file* into *dst_base_dir* unless the store already has it.

    Returns ``True`` when the file was imported and ``False`` when it was
    already recorded. On failure nothing is recorded so a later run retries.
    """

    if store.is_path_processed(src_file):
        return False
    link_file(src_base_dir, src_file, dst_base_dir)
    store.add_processed_file(src_file)
    return True


SUMMARY_MAX_LISTED = 20


def _format_paths(paths: list[Path], total: int) -> str:
    listed = ", ".join(str(p) for p in paths)
    if total > len(paths):
        listed += f" and {total - len(paths)} more"
    return listed


@dataclass
class ImportSummary:
    """Running totals of a scan or a daemon session.

    Only the first *max_listed* imported and failed paths are kept; the
    counters cover every file.
    """

    max_listed: int = SUMMARY_MAX_LISTED
    imported: list[Path] = field(default_factory=list)
    imported_count: int = 0
    skipped: int = 0
    failed: list[Path] = field(default_factory=list)
    failed_count: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def record(self, item: WorkItem, outcome: ImportOutcome) -> None:
        with self._lock:
            if outcome.status == IMPORTED:
                self.imported_count += 1
                if len(self.imported) < self.max_listed:
                    self.imported.append(item.file)
            elif outcome.status == SKIPPED:
                self.skipped += 1
            else:
                self.failed_count += 1
                if len(self.failed) < self.max_listed:
                    self.failed.append(item.file)

    def log_summary(self) -> None:
        with self._lock:
            if self.imported_count:
                logger.info(
                    "Imported files (%d): %s",
                    self.imported_count,
                    _format_paths(self.imported, self.imported_count),
                )
            else:
                logger.info("Imported files: none")
            logger.info("Skipped files (already processed): %d", self.skipped)
            if self.failed_count:
                logger.warning(
                    "Failed files (%d): %s",
                    self.failed_count,
                    _format_paths(self.failed, self.failed_count),
                )


class LinkImportHandler(ImportHandler):
    """Hard-link new files into the drop directory and log every outcome."""

    def __init__(self, store: ProcessedFileStore, destination: PathLike) -> None:
        self.store = store
        self.destination = Path(destination)
        self.summary = ImportSummary()

    def process(self, item: WorkItem) -> ImportOutcome:
        if import_file(self.store, item.file, item.source_dir, self.destination):
            return ImportOutcome.imported()
        return ImportOutcome.skipped()

    def report(self, item: WorkItem, outcome: ImportOutcome) -> None:
        self.summary.record(item, outcome)
        if outcome.status == IMPORTED:
            logger.info(
                "Processing file successfully: %s - Destination directory: %s",
                item.file,
                self.destination,
            )
        elif outcome.status == SKIPPED:
            logger.debug("Skipping file, already processed: %s", item.file)
        else:
            logger.error("Failed to process file: %s with error: %s", item.file, outcome.error)
