import queue
from types import SimpleNamespace

import pytest

import feeds
from import_pipeline import WorkItem, WorkQueue, WorkQueueClosed


def drain(work_queue):
    items = []
    while True:
        try:
            items.append(work_queue.get(timeout=0))
        except (queue.Empty, WorkQueueClosed):
            return items


def test_glob_pattern_is_case_insensitive():
    assert feeds.glob_pattern(".mkv") == "**/*.[mM][kK][vV]"
    assert feeds.glob_pattern("mp4") == "**/*.[mM][pP]4"


def test_normalize_extensions():
    assert feeds.normalize_extensions(None) == (".mkv",)
    assert feeds.normalize_extensions(["MKV", ".mp4", "mkv", " "]) == (".mkv", ".mp4")
    assert feeds.normalize_extensions([""]) == (".mkv",)


def test_scan_directories_enqueues_matching_files(tmp_path):
    root = tmp_path / "src"
    (root / "show" / "season 1").mkdir(parents=True)
    (root / "show" / "ep1.mkv").write_bytes(b"1")
    (root / "show" / "season 1" / "ep2.MKV").write_bytes(b"2")
    (root / "show" / "notes.txt").write_text("x")
    (root / "show" / "sample.mp4").write_bytes(b"3")
    (root / "folder.mkv").mkdir()
    other = tmp_path / "other"
    other.mkdir()
    (other / "movie.mkv").write_bytes(b"4")
    work_queue = WorkQueue(maxsize=10)

    queued = feeds.scan_directories(work_queue, [root, other], show_progress=False)

    assert queued == 3
    assert sorted(drain(work_queue), key=lambda item: str(item.file)) == [
        WorkItem(other / "movie.mkv", other),
        WorkItem(root / "show" / "ep1.mkv", root),
        WorkItem(root / "show" / "season 1" / "ep2.MKV", root),
    ]


def test_scan_directories_with_extra_extensions(tmp_path):
    root = tmp_path / "src"
    root.mkdir()
    (root / "a.mkv").write_bytes(b"1")
    (root / "b.mp4").write_bytes(b"2")
    work_queue = WorkQueue(maxsize=10)

    queued = feeds.scan_directories(work_queue, [root], extensions=(".mkv", ".mp4"), show_progress=False)

    assert queued == 2
    assert {item.file.name for item in drain(work_queue)} == {"a.mkv", "b.mp4"}


def test_scan_directories_fails_on_closed_queue(tmp_path):
    root = tmp_path / "src"
    root.mkdir()
    (root / "a.mkv").write_bytes(b"1")
    work_queue = WorkQueue()
    work_queue.close()

    with pytest.raises(WorkQueueClosed):
        feeds.scan_directories(work_queue, [root], show_progress=False)


@pytest.fixture
def watcher(tmp_path):
    root = tmp_path / "src"
    root.mkdir()
    work_queue = WorkQueue(maxsize=10)
    return feeds.DebouncedWatcher(work_queue, [root], delay=10.0)


def test_path_is_emitted_after_quiet_period(watcher):
    root = watcher.roots[0]
    episode = root / "ep1.mkv"
    episode.write_bytes(b"data")

    watcher.touch(episode, root, now=100.0)
    assert watcher.flush(now=105.0) == 0
    watcher.touch(episode, root, now=105.0)
    assert watcher.flush(now=114.0) == 0
    assert watcher.flush(now=115.0) == 1

    assert drain(watcher.work_queue) == [WorkItem(episode, root)]
    assert watcher.pending == 0


def test_deleted_and_foreign_files_are_ignored(watcher):
    root = watcher.roots[0]
    gone = root / "gone.mkv"
    text = root / "notes.txt"
    text.write_text("x")
    subdir = root / "dir.mkv"
    subdir.mkdir()

    for path in (gone, text, subdir):
        watcher.touch(path, root, now=0.0)

    assert watcher.flush(now=20.0) == 0
    assert drain(watcher.work_queue) == []
    assert watcher.pending == 0


def test_event_handler_records_file_events(watcher):
    root = watcher.roots[0]
    handler = feeds._DebouncingEventHandler(watcher, root)

    handler.on_created(SimpleNamespace(is_directory=False, src_path=str(root / "a.mkv")))
    handler.on_modified(SimpleNamespace(is_directory=False, src_path=str(root / "a.mkv")))
    handler.on_moved(
        SimpleNamespace(
            is_directory=False,
            src_path=str(root / "b.part"),
            dest_path=str(root / "b.mkv"),
        )
    )
    handler.on_created(SimpleNamespace(is_directory=True, src_path=str(root / "folder")))

    assert watcher.pending == 2
    paths = {path for path, _root in watcher.due(now=float("inf"))}
    assert paths == {root / "a.mkv", root / "b.mkv"}


def test_watcher_requires_roots():
    with pytest.raises(ValueError):
        feeds.DebouncedWatcher(WorkQueue(), [])


def test_watcher_picks_up_new_file(tmp_path):
    root = tmp_path / "src"
    (root / "show").mkdir(parents=True)
    work_queue = WorkQueue(maxsize=10)

    with feeds.DebouncedWatcher(work_queue, [root], delay=0.2):
        episode = root / "show" / "ep1.mkv"
        episode.write_bytes(b"data")
        item = work_queue.get(timeout=10)

    assert item == WorkItem(episode, root)


def test_flush_loop_stops_when_queue_closed(tmp_path, monkeypatch):
    monkeypatch.setattr(feeds, "_FLUSH_INTERVAL", 0.01)
    root = tmp_path / "src"
    root.mkdir()
    episode = root / "ep1.mkv"
    episode.write_bytes(b"data")
    work_queue = WorkQueue()
    work_queue.close()
    watcher = feeds.DebouncedWatcher(work_queue, [root], delay=0.0)
    watcher.touch(episode, root, now=0.0)

    # returns instead of looping forever
    watcher._flush_loop()

    assert watcher.pending == 0


def test_unreadable_path_does_not_block_other_files(watcher):
    root = watcher.roots[0]
    too_long = root / ("x" * 300 + ".mkv")
    episode = root / "ep1.mkv"
    episode.write_bytes(b"data")

    watcher.touch(too_long, root, now=0.0)
    watcher.touch(episode, root, now=0.0)

    assert watcher.flush(now=20.0) == 1
    assert drain(watcher.work_queue) == [WorkItem(episode, root)]


def test_flush_loop_keeps_running_after_unexpected_error(tmp_path, monkeypatch):
    monkeypatch.setattr(feeds, "_FLUSH_INTERVAL", 0.01)
    root = tmp_path / "src"
    root.mkdir()
    watcher = feeds.DebouncedWatcher(WorkQueue(), [root], delay=0.0)
    calls = []

    def flaky_flush(now=None):
        calls.append(now)
        if len(calls) == 1:
            raise RuntimeError("disk went away")
        watcher._stop_requested.set()
        return 0

    monkeypatch.setattr(watcher, "flush", flaky_flush)

    watcher._flush_loop()

    assert len(calls) == 2


def test_watcher_survives_unreadable_path(tmp_path):
    root = tmp_path / "src"
    root.mkdir()
    work_queue = WorkQueue(maxsize=10)

    with feeds.DebouncedWatcher(work_queue, [root], delay=0.0) as watcher:
        watcher.touch(root / ("x" * 300 + ".mkv"), root)
        episode = root / "ep1.mkv"
        episode.write_bytes(b"data")

        item = work_queue.get(timeout=10)

        assert item == WorkItem(episode, root)
        assert watcher._flusher.is_alive()
