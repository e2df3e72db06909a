#!/usr/bin/env python3
"""shoko-importer: hard link new media files into a Shoko server drop directory.

Files found under the watch directories are linked into the drop directory,
keeping their path relative to the watch root. Every imported source path is
recorded in ``<data-dir>/db.sqlite3`` so it is never linked twice.
"""
import argparse
import logging
import os
import shlex
import signal
import sys
import threading
from pathlib import Path
from typing import Optional, Sequence, Union

from feeds import (
    DEFAULT_DEBOUNCE_SECONDS,
    DebouncedWatcher,
    normalize_extensions,
    scan_directories,
)
from import_pipeline import (
    DEFAULT_PARALLEL,
    DEFAULT_QUEUE_SIZE,
    TRACE,
    ImportWorkerPool,
    LinkImportHandler,
    WorkQueue,
)
from linker import LinkError, ensure_directory
from processed_store import DB_FILENAME, ProcessedFileStore, StoreError

# ─── Logging setup ─────────────────────────────────────────────────────────────
LOGFILE_ENV = 'SHOKO_IMPORTER_LOGFILE'


def _expand_path(path: str) -> str:
    """Return a normalized absolute path with user expansion."""

    return os.path.abspath(os.path.expanduser(path))


def _resolve_logfile() -> Optional[str]:
    raw = os.environ.get(LOGFILE_ENV)
    if raw is None:
        return None
    candidate = raw.strip()
    if not candidate:
        return None
    return _expand_path(candidate)


logger = logging.getLogger('shoko-importer')
logger.setLevel(logging.INFO)
logger.propagate = False

fmt = logging.Formatter('%(asctime)s %(levelname)-8s %(message)s')

LOG_HANDLERS: list[logging.Handler] = []

LOG_LEVELS = {
    'off': logging.CRITICAL + 10,
    'error': logging.ERROR,
    'warn': logging.WARNING,
    'info': logging.INFO,
    'debug': logging.DEBUG,
    'trace': TRACE,
}


def setup_logging(logfile: Optional[str] = None) -> None:
    if LOG_HANDLERS:
        return
    sh = logging.StreamHandler(sys.stdout)
    sh.setFormatter(fmt)
    logger.addHandler(sh)
    LOG_HANDLERS.append(sh)

    if logfile:
        logdir = os.path.dirname(logfile)
        try:
            os.makedirs(logdir, exist_ok=True)
            fh = logging.FileHandler(logfile)
        except OSError as e:
            logger.error(f"Could not open log file {logfile}: {e}")
        else:
            fh.setFormatter(fmt)
            logger.addHandler(fh)
            LOG_HANDLERS.append(fh)

    try:
        from systemd.journal import JournalHandler
        jh = JournalHandler()
        jh.setFormatter(fmt)
        logger.addHandler(jh)
        LOG_HANDLERS.append(jh)
    except Exception:
        pass


def set_logging_level(name: str) -> None:
    level = LOG_LEVELS[name]
    logger.setLevel(level)
    for handler in LOG_HANDLERS:
        handler.setLevel(level)

    # The library modules log under "shoko-importer.<part>"; route them
    # through the same handlers.
    for child in ('store', 'pipeline', 'linker', 'feeds'):
        child_logger = logging.getLogger(f'shoko-importer.{child}')
        child_logger.setLevel(level)
        child_logger.propagate = False
        for handler in LOG_HANDLERS:
            if handler not in child_logger.handlers:
                child_logger.addHandler(handler)
# ────────────────────────────────────────────────────────────────────────────────


# ─── Configuration ─────────────────────────────────────────────────────────────
DEFAULT_DATA_DIR = './.shoko-external-importer'

TRUE_VALUES = {'1', 'true', 'yes', 'on'}
FALSE_VALUES = {'0', 'false', 'no', 'off'}

ENV_BOOL_FLAGS: dict[str, str] = {
    'DAEMON': '--daemon',
    'SYSTEMD_NOTIFY': '--systemd-notify',
    'INIT_RUN': '--init-run',
    'NO_PROGRESS': '--no-progress',
}

ENV_VALUE_FLAGS: dict[str, str] = {
    'WATCH_DIRECTORIES': '--watch-dirs',
    'DATA_DIRECTORY': '--data-dir',
    'SHOKO_DROP_DIRECTORY': '--shoko-drop-dir',
    'LOGGING_LEVEL': '--log-level',
    'PARALLEL': '--parallel',
    'QUEUE_SIZE': '--queue-size',
    'DEBOUNCE_SECONDS': '--debounce',
    'EXTENSIONS': '--extension',
}


def _parse_env_bool(value: str) -> Union[bool, None]:
    stripped = value.strip()
    hash_index = stripped.find('#')
    if hash_index != -1:
        stripped = stripped[:hash_index].rstrip()
    if stripped == '':
        return None
    lowered = stripped.lower()
    if lowered in TRUE_VALUES:
        return True
    if lowered in FALSE_VALUES:
        return False
    return None


def _collect_cli_args_from_env(environ: Optional[dict[str, str]] = None) -> list[str]:
    env = os.environ if environ is None else environ
    cli_args: list[str] = []

    for var, flag in ENV_BOOL_FLAGS.items():
        raw = env.get(var)
        if raw is None:
            continue
        result = _parse_env_bool(raw)
        if result is None:
            logger.warning(
                "Ignoring %s=%s (expected one of %s or %s)",
                var,
                raw,
                '/'.join(sorted(TRUE_VALUES)),
                '/'.join(sorted(FALSE_VALUES)),
            )
            continue
        if result:
            cli_args.append(flag)

    for var, flag in ENV_VALUE_FLAGS.items():
        value = env.get(var, '').strip()
        if value:
            cli_args.extend([flag, value])

    extra = env.get('EXTRA_ARGS')
    if extra:
        try:
            cli_args.extend(shlex.split(extra))
        except ValueError as exc:
            logger.warning("Could not parse EXTRA_ARGS (%s): %s", extra, exc)

    return cli_args


def _split_paths(values: Optional[Sequence[str]]) -> list[str]:
    parts: list[str] = []
    for value in values or ():
        for part in value.split(':'):
            part = part.strip()
            if part:
                parts.append(part)
    return parts


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog='shoko-importer',
        description="Import media into a Shoko server drop directory using hard links",
    )
    p.add_argument('-w', '--watch-dirs', action='append', metavar='DIRS',
                   help="Directories to watch, colon separated (ex: /path/1:/path/2); "
                        "can be repeated [env: WATCH_DIRECTORIES]")
    p.add_argument('-d', '--data-dir', default=DEFAULT_DATA_DIR,
                   help="Data directory holding the processed file database [env: DATA_DIRECTORY]")
    p.add_argument('-s', '--shoko-drop-dir',
                   help="Drop directory of the Shoko server [env: SHOKO_DROP_DIRECTORY]")
    p.add_argument('--daemon', action='store_true',
                   help="Run in daemon mode: skip the initial scan and watch for new files [env: DAEMON]")
    p.add_argument('--systemd-notify', action='store_true',
                   help="Notify systemd of ready status [env: SYSTEMD_NOTIFY]")
    p.add_argument('-i', '--init-run', action='store_true',
                   help="In daemon mode, run an initial scan before watching [env: INIT_RUN]")
    p.add_argument('-l', '--log-level', default='info', choices=sorted(LOG_LEVELS),
                   type=str.lower, help="Logging level [env: LOGGING_LEVEL]")
    p.add_argument('-p', '--parallel', type=int, default=DEFAULT_PARALLEL,
                   help="Maximum number of files processed at the same time [env: PARALLEL]")
    p.add_argument('--queue-size', type=int, default=DEFAULT_QUEUE_SIZE,
                   help="Capacity of the pending file queue [env: QUEUE_SIZE]")
    p.add_argument('--debounce', type=float, default=DEFAULT_DEBOUNCE_SECONDS,
                   help="Seconds a file must stay quiet before it is imported in daemon mode "
                        "[env: DEBOUNCE_SECONDS]")
    p.add_argument('-e', '--extension', dest='extensions', action='append', metavar='EXT',
                   help="File extension to import, colon separated or repeated (default: mkv) "
                        "[env: EXTENSIONS]")
    p.add_argument('--no-progress', action='store_true',
                   help="Disable the scan progress counter [env: NO_PROGRESS]")
    p.add_argument('--markdown-help', action='store_true', help=argparse.SUPPRESS)
    return p


def parse_args(argv: Optional[Sequence[str]] = None, environ: Optional[dict[str, str]] = None):
    parser = build_parser()
    raw = list(sys.argv[1:] if argv is None else argv)
    args = parser.parse_args([*_collect_cli_args_from_env(environ), *raw])
    if args.markdown_help:
        return args
    args.watch_dirs = _split_paths(args.watch_dirs)
    if not args.watch_dirs:
        parser.error("at least one watch directory is required (--watch-dirs or WATCH_DIRECTORIES)")
    if not args.shoko_drop_dir:
        parser.error("the Shoko drop directory is required (--shoko-drop-dir or SHOKO_DROP_DIRECTORY)")
    if args.parallel < 1:
        parser.error("--parallel must be at least 1")
    if args.queue_size < 1:
        parser.error("--queue-size must be at least 1")
    if args.debounce < 0:
        parser.error("--debounce must be zero or greater")
    args.extensions = normalize_extensions(_split_paths(args.extensions))
    return args


def format_help_markdown(parser: argparse.ArgumentParser) -> str:
    """Render the option reference of *parser* as a markdown table."""

    lines = [
        f"# {parser.prog}",
        "",
        parser.description or "",
        "",
        "| Option | Description | Default |",
        "|--------|-------------|---------|",
    ]
    for action in parser._actions:
        if action.help == argparse.SUPPRESS or not action.option_strings:
            continue
        options = ", ".join(f"`{opt}`" for opt in action.option_strings)
        default = action.default
        if default is None or default is False or isinstance(action, argparse._HelpAction):
            shown = "_none_"
        else:
            shown = f"`{default}`"
        description = (action.help or "").replace("|", "\\|")
        lines.append(f"| {options} | {description} | {shown} |")
    return "\n".join(lines) + "\n"
# ────────────────────────────────────────────────────────────────────────────────


def notify_systemd_ready() -> None:
    try:
        from systemd import daemon
    except ImportError:
        logger.warning("systemd notification requested but the systemd Python package is not installed")
        return
    daemon.notify('READY=1')


def open_store(data_dir: Path) -> ProcessedFileStore:
    store = ProcessedFileStore.from_file(data_dir / DB_FILENAME)
    applied = store.run_migrations()
    if applied:
        logger.info("Database migrated to version %d", applied[-1])
    return store


def run_once(work_queue: WorkQueue, watch_dirs: Sequence[Path], drop_dir: Path, args) -> int:
    logger.info(
        "Start running scan and import in one time mode, destination directory: %s",
        drop_dir,
    )
    return scan_directories(
        work_queue,
        watch_dirs,
        extensions=args.extensions,
        show_progress=not args.no_progress,
    )


def run_watch(work_queue: WorkQueue, watch_dirs: Sequence[Path], drop_dir: Path, args,
              stop_event: threading.Event) -> None:
    logger.info(
        "Start running scan and import in watch mode, destination directory: %s",
        drop_dir,
    )
    with DebouncedWatcher(work_queue, watch_dirs, extensions=args.extensions, delay=args.debounce):
        if args.systemd_notify:
            notify_systemd_ready()
        stop_event.wait()


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    if args.markdown_help:
        sys.stdout.write(format_help_markdown(build_parser()))
        return 0
    setup_logging(_resolve_logfile())
    set_logging_level(args.log_level)

    try:
        watch_dirs = [ensure_directory(path) for path in args.watch_dirs]
        drop_dir = ensure_directory(args.shoko_drop_dir)
        data_dir = ensure_directory(args.data_dir)
        store = open_store(data_dir)
    except (LinkError, StoreError) as exc:
        logger.error("Startup failed: %s", exc)
        return 1

    work_queue = WorkQueue(maxsize=args.queue_size)
    handler = LinkImportHandler(store, drop_dir)
    pool = ImportWorkerPool(handler, work_queue, parallel=args.parallel)
    dispatcher = pool.start()

    try:
        if not args.daemon or args.init_run:
            run_once(work_queue, watch_dirs, drop_dir, args)

        if args.daemon:
            stop_event = threading.Event()

            def handle_sig(signum, frame):
                logger.info("Stopping...")
                stop_event.set()

            signal.signal(signal.SIGINT, handle_sig)
            signal.signal(signal.SIGTERM, handle_sig)
            run_watch(work_queue, watch_dirs, drop_dir, args, stop_event)
        elif args.systemd_notify:
            notify_systemd_ready()
    finally:
        work_queue.close()
        dispatcher.join()
        handler.summary.log_summary()
        store.close()
    return 0


if __name__ == '__main__':
    raise SystemExit(main())
