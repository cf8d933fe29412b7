# /mirror_daemon.py
"""
Mirror Daemon
- Periodically reconciles a destination folder with a source folder (one way).
- Copies new files and files whose source mtime is strictly newer than the destination's.
- Creates missing subdirectories (-R) and prunes destination entries absent from the source.
- Symlinks are ignored in both trees: never copied, never followed, never pruned against.
- Small files go through a chunk buffer, large ones through memory maps. Every copy
  lands in a temp file, gets the source mtime, and is then renamed into place.
- SIGUSR1 (or, with --watch, a change under the source) wakes the daemon for an
  immediate pass. Wakes arriving mid-pass collapse into one follow-up pass.
- Styled console output:
  - COPY green
  - REMOVE / RMDIR orange
  - MKDIR light brown
  - WAKE cyan
  - failures / errors red
- Log file is always plain (no color codes).

Usage
  pip install colorama pathspec watchdog
  python mirror_daemon.py /src /dst
  python mirror_daemon.py /src /dst -R 60 1048576
  python mirror_daemon.py /src /dst -R --watch --foreground --exclude "*.tmp"
  kill -USR1 <pid>
"""

from __future__ import annotations

import argparse
import contextlib
import dataclasses
import datetime as dt
import enum
import json
import logging
import mmap
import os
import queue
import signal
import stat
import sys
import tempfile
import time
from collections import Counter
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Iterable, Iterator, Optional

from colorama import just_fix_windows_console
from pathspec import PathSpec
from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

LOGGER_NAME = "mirror_daemon"

DEFAULT_INTERVAL_SEC = 300
DEFAULT_MMAP_THRESHOLD = 10 * 1024 * 1024
COPY_CHUNK_SIZE = 64 * 1024

DIR_MODE = 0o755
FILE_MODE = 0o644
TEMP_SUFFIX = ".mirror-tmp"

_O_NONBLOCK = getattr(os, "O_NONBLOCK", 0)
_O_BINARY = getattr(os, "O_BINARY", 0)


# -------------------------
# Console styling
# -------------------------

class Ansi:
    RESET = "\x1b[0m"
    RED = "\x1b[31m"
    GREEN = "\x1b[32m"
    CYAN = "\x1b[36m"
    ORANGE = "\x1b[38;5;208m"
    WHITE = "\x1b[97m"
    LIGHT_BROWN = "\x1b[33m"


ACTION_COLORS = {
    "COPY": Ansi.GREEN,
    "REMOVE": Ansi.ORANGE,
    "RMDIR": Ansi.ORANGE,
    "MKDIR": Ansi.LIGHT_BROWN,
    "WAKE": Ansi.CYAN,
}


def _supports_color(stream) -> bool:
    try:
        return hasattr(stream, "isatty") and stream.isatty()
    except Exception:
        return False


class ColorizingFormatter(logging.Formatter):
    def __init__(self, use_color: bool, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        if not self.use_color:
            return base

        if record.levelno >= logging.ERROR:
            return f"{Ansi.RED}{base}{Ansi.RESET}"

        action = getattr(record, "action", None)
        if action:
            color = Ansi.RED if action.endswith("_FAIL") else ACTION_COLORS.get(action, "")
            if color and action in base:
                base = base.replace(action, f"{color}{action}{Ansi.RESET}", 1)

        path_text = getattr(record, "path_text", None)
        if path_text and path_text in base:
            pcolor = Ansi.LIGHT_BROWN if getattr(record, "is_dir", False) else Ansi.WHITE
            base = base.replace(path_text, f"{pcolor}{path_text}{Ansi.RESET}")

        return base


def _today_log_name(prefix: str = "mirror") -> str:
    return f"{prefix}_{dt.date.today().isoformat()}.log"


def setup_logger(log_dir: Optional[Path] = None) -> logging.Logger:
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.INFO)
    logger.propagate = False

    if logger.handlers:
        return logger

    just_fix_windows_console()

    fmt = "%(asctime)s | %(levelname)s | %(message)s"
    datefmt = "%Y-%m-%d %H:%M:%S"

    fh = None
    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        log_path = log_dir / _today_log_name()
        fh = logging.FileHandler(log_path, encoding="utf-8")
        fh.setFormatter(logging.Formatter(fmt=fmt, datefmt=datefmt))
        fh.setLevel(logging.INFO)

    ch = logging.StreamHandler(sys.stdout)
    ch.setLevel(logging.INFO)
    ch.setFormatter(ColorizingFormatter(use_color=_supports_color(sys.stdout), fmt=fmt, datefmt=datefmt))
    logger.addHandler(ch)

    if fh is not None:
        logger.addHandler(fh)
        logger.info("Logging to: %s", log_path)

    return logger


def log_action(
    logger: logging.Logger,
    action: str,
    message: str,
    path: Optional[Path] = None,
    is_dir: bool = False,
    level: int = logging.INFO,
) -> None:
    extra = {"action": action}
    if path is not None:
        extra["path_text"] = str(path)
        extra["is_dir"] = is_dir
    logger.log(level, f"{action} | {message}", extra=extra)


# -------------------------
# Data model
# -------------------------

class EntryKind(enum.Enum):
    FILE = "file"
    DIRECTORY = "directory"
    SYMLINK = "symlink"
    OTHER = "other"


class SyncResult(enum.Enum):
    COPIED = "copied"
    SKIPPED_UP_TO_DATE = "up_to_date"
    SKIPPED_SYMLINK = "symlink"
    SKIPPED_NO_RECURSION = "no_recursion"
    SKIPPED_EXCLUDED = "excluded"
    REMOVED = "removed"
    ERROR = "error"


@dataclass(frozen=True)
class Entry:
    path: Path
    kind: EntryKind
    size: int
    mtime_ns: int

    @property
    def name(self) -> str:
        return self.path.name

    @property
    def is_dir(self) -> bool:
        return self.kind is EntryKind.DIRECTORY


def format_stats(stats: Counter) -> str:
    parts = [f"{result.value}={stats[result]}" for result in SyncResult if stats[result]]
    return " ".join(parts) or "empty"


# -------------------------
# Config / CLI
# -------------------------

@dataclass(frozen=True)
class SyncConfig:
    source_root: Path
    destination_root: Path
    recursive: bool = False
    mmap_threshold: int = DEFAULT_MMAP_THRESHOLD
    interval_sec: float = DEFAULT_INTERVAL_SEC
    excludes: tuple[str, ...] = ()


@dataclass(frozen=True)
class AppConfig:
    sync: SyncConfig
    log_dir: Optional[Path]
    foreground: bool
    watch: bool


def parse_args(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(
        prog="mirror-daemon",
        description="Periodically mirror one folder into another.",
    )
    p.add_argument("source", help="Folder to mirror from.")
    p.add_argument("destination", help="Folder to mirror into (created if missing).")
    p.add_argument(
        "numbers",
        nargs="*",
        type=int,
        metavar="N",
        help=f"Interval in seconds (default {DEFAULT_INTERVAL_SEC}), "
        f"then mmap threshold in bytes (default {DEFAULT_MMAP_THRESHOLD}).",
    )
    p.add_argument("-R", dest="recursive", action="store_true", default=None, help="Recurse into subdirectories.")
    p.add_argument("--config", type=str, default=None, help="JSON file with default settings.")
    p.add_argument("--exclude", action="append", default=[], metavar="PATTERN", help="gitignore-style pattern to leave alone.")
    p.add_argument("--log-dir", type=str, default=None, help="Directory for log files.")
    p.add_argument("--watch", action="store_true", help="Also wake on changes under the source folder.")
    p.add_argument("--foreground", action="store_true", help="Do not fork into the background.")
    args = p.parse_intermixed_args(argv)
    if len(args.numbers) > 2:
        p.error("at most two numbers are accepted: interval, mmap threshold")
    return args


def load_config_file(path: Path) -> dict:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        raise ValueError(f"Cannot read config file {path}: {e}") from e
    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must hold a JSON object")
    return data


def build_effective_config(args: argparse.Namespace) -> AppConfig:
    saved = load_config_file(Path(args.config)) if args.config else {}

    numbers = list(args.numbers)
    interval = float(numbers[0]) if numbers else float(saved.get("interval_sec", DEFAULT_INTERVAL_SEC))
    threshold = numbers[1] if len(numbers) > 1 else int(saved.get("mmap_threshold", DEFAULT_MMAP_THRESHOLD))
    recursive = args.recursive if args.recursive is not None else bool(saved.get("recursive", False))
    excludes = tuple(str(x) for x in saved.get("excludes", [])) + tuple(args.exclude)

    log_dir = Path(args.log_dir) if args.log_dir else (Path(saved["log_dir"]) if "log_dir" in saved else None)

    if interval <= 0:
        raise ValueError(f"Interval must be a positive number of seconds, got {interval:g}")
    if threshold < 0:
        raise ValueError(f"mmap threshold must not be negative, got {threshold}")

    sync = SyncConfig(
        source_root=Path(args.source),
        destination_root=Path(args.destination),
        recursive=recursive,
        mmap_threshold=threshold,
        interval_sec=interval,
        excludes=excludes,
    )
    return AppConfig(sync=sync, log_dir=log_dir, foreground=args.foreground, watch=args.watch)


def _is_subpath(child: Path, parent: Path) -> bool:
    try:
        child.relative_to(parent)
        return True
    except ValueError:
        return False


def validate_paths(source: Path, destination: Path) -> tuple[Path, Path]:
    source = source.expanduser().resolve()
    destination = destination.expanduser().resolve()

    if not source.is_dir():
        raise ValueError(f"Source folder does not exist or is not a folder: {source}")
    if source == destination:
        raise ValueError("Source and destination folders must be different.")
    if _is_subpath(destination, source):
        raise ValueError("Destination folder must NOT be inside source folder (would cause loops).")
    if _is_subpath(source, destination):
        raise ValueError("Source folder must NOT be inside destination folder (it would be pruned).")

    if destination.exists() or destination.is_symlink():
        if not destination.is_dir():
            raise ValueError(f"Destination exists but is not a folder: {destination}")
    else:
        destination.mkdir(mode=DIR_MODE, parents=True)
        log_action(logging.getLogger(LOGGER_NAME), "MKDIR", f"(destination) {destination}", path=destination, is_dir=True)
    return source, destination


# -------------------------
# Exclusions
# -------------------------

class ExcludeMatcher:
    def __init__(self, patterns: Iterable[str] = ()):
        self.patterns = tuple(patterns)
        self.spec = PathSpec.from_lines("gitwildmatch", self.patterns)

    def is_excluded(self, rel_posix: str, is_dir: bool = False) -> bool:
        if not self.patterns:
            return False
        if is_dir and not rel_posix.endswith("/"):
            rel_posix += "/"
        return self.spec.match_file(rel_posix)


def _join_rel(rel_dir: str, name: str) -> str:
    return f"{rel_dir}/{name}" if rel_dir else name


# -------------------------
# Directory walking
# -------------------------

def _kind_of(mode: int) -> EntryKind:
    if stat.S_ISLNK(mode):
        return EntryKind.SYMLINK
    if stat.S_ISDIR(mode):
        return EntryKind.DIRECTORY
    if stat.S_ISREG(mode):
        return EntryKind.FILE
    return EntryKind.OTHER


def _entry_from_stat(path: Path, st: os.stat_result) -> Entry:
    return Entry(path=path, kind=_kind_of(st.st_mode), size=st.st_size, mtime_ns=st.st_mtime_ns)


def lstat_entry(path: Path) -> Optional[Entry]:
    """Entry for ``path`` without following symlinks, or None when nothing is there."""
    try:
        st = os.lstat(path)
    except (FileNotFoundError, NotADirectoryError):
        return None
    return _entry_from_stat(path, st)


def scan_entries(directory: Path, logger: Optional[logging.Logger] = None) -> Iterator[Entry]:
    """
    Lazily list the immediate children of ``directory``.

    The directory is opened right away, so an unreadable directory raises
    OSError here rather than on first iteration. Children are classified with
    lstat semantics (a symlink is a SYMLINK, whatever it points at). Children
    whose metadata cannot be read are logged and skipped. Order is whatever
    the filesystem returns.
    """
    handle = os.scandir(directory)
    return _iter_entries(handle, Path(directory), logger or logging.getLogger(LOGGER_NAME))


def _iter_entries(handle, directory: Path, logger: logging.Logger) -> Iterator[Entry]:
    with handle:
        for item in handle:
            path = directory / item.name
            try:
                st = item.stat(follow_symlinks=False)
            except OSError as e:
                log_action(logger, "SCAN", f"SKIP unreadable entry {path} | {e}", path=path, level=logging.WARNING)
                continue
            yield _entry_from_stat(path, st)


# -------------------------
# File copy
# -------------------------

@lru_cache(maxsize=None)
def _default_file_mode() -> int:
    mask = os.umask(0)
    os.umask(mask)
    return FILE_MODE & ~mask


def _copy_buffered(src_fd: int, dst_fd: int, length: int) -> None:
    remaining = length
    while remaining > 0:
        chunk = os.read(src_fd, min(COPY_CHUNK_SIZE, remaining))
        if not chunk:
            break
        remaining -= len(chunk)
        view = memoryview(chunk)
        while view:
            # os.write may accept fewer bytes than offered
            view = view[os.write(dst_fd, view):]


def _copy_mapped(src_fd: int, dst_fd: int, length: int) -> None:
    if length == 0:
        return
    os.ftruncate(dst_fd, length)
    with mmap.mmap(src_fd, length, access=mmap.ACCESS_READ) as src_map, \
            mmap.mmap(dst_fd, length, access=mmap.ACCESS_WRITE) as dst_map:
        dst_map[:] = src_map
        dst_map.flush()


def _fill_from(src: Path, dst_fd: int, mapped: bool) -> os.stat_result:
    src_fd = os.open(src, os.O_RDONLY | _O_NONBLOCK | _O_BINARY)
    try:
        src_stat = os.fstat(src_fd)
        if mapped:
            _copy_mapped(src_fd, dst_fd, src_stat.st_size)
        else:
            _copy_buffered(src_fd, dst_fd, src_stat.st_size)
        return src_stat
    finally:
        os.close(src_fd)


def copy_file(src: Path, dst: Path, size: int, mmap_threshold: int = DEFAULT_MMAP_THRESHOLD) -> None:
    """
    Copy ``src`` over ``dst`` so that ``dst`` is either the old file or the complete new one.

    Bytes go into a temp file next to ``dst``; ``size`` (as listed by the walker)
    picks the strategy: memory maps at or above ``mmap_threshold``, a chunk buffer
    below it. Both produce the same bytes. The temp file receives the source
    mtime before it is renamed over ``dst``, so the next pass never sees a new
    file with a stale or local timestamp. On any failure the temp file is removed
    and the exception propagates.

    Only the number of bytes reported by fstat at open time is copied, which also
    keeps FIFOs and device nodes (size 0) from blocking.
    """
    tmp_fd, tmp_name = tempfile.mkstemp(prefix=".", suffix=TEMP_SUFFIX, dir=dst.parent)
    tmp = Path(tmp_name)
    try:
        try:
            src_stat = _fill_from(src, tmp_fd, mapped=size >= mmap_threshold)
        finally:
            os.close(tmp_fd)
        os.chmod(tmp, _default_file_mode())
        os.utime(tmp, ns=(src_stat.st_atime_ns, src_stat.st_mtime_ns))
        os.replace(tmp, dst)
    except BaseException:
        with contextlib.suppress(OSError):
            tmp.unlink()
        raise


# -------------------------
# Pruning
# -------------------------

class ExtraneousPruner:
    """Deletes destination entries that have no counterpart in the source, one level at a time."""

    def __init__(self, config: SyncConfig, logger: logging.Logger, excludes: Optional[ExcludeMatcher] = None):
        self.config = config
        self.logger = logger
        self.excludes = excludes or ExcludeMatcher(config.excludes)

    def prune(self, src_dir: Path, dst_dir: Path, rel_dir: str = "", stats: Optional[Counter] = None) -> Counter:
        """
        Remove entries of ``dst_dir`` whose name does not exist (lstat) in ``src_dir``.

        Files and symlinks always go. Directories go, recursively, only when the
        config is recursive. Excluded entries are kept.
        """
        stats = Counter() if stats is None else stats
        try:
            entries = list(scan_entries(dst_dir, self.logger))
        except OSError as e:
            log_action(self.logger, "REMOVE_FAIL", f"cannot list {dst_dir} | {e}", path=dst_dir, is_dir=True, level=logging.ERROR)
            stats[SyncResult.ERROR] += 1
            return stats

        for entry in entries:
            if self.excludes.is_excluded(_join_rel(rel_dir, entry.name), entry.is_dir):
                continue
            try:
                counterpart = lstat_entry(src_dir / entry.name)
            except OSError as e:
                log_action(self.logger, "REMOVE_FAIL", f"cannot check source for {entry.path} | {e}", path=entry.path, level=logging.ERROR)
                stats[SyncResult.ERROR] += 1
                continue
            if counterpart is not None:
                continue

            if entry.is_dir:
                if not self.config.recursive:
                    stats[SyncResult.SKIPPED_NO_RECURSION] += 1
                    continue
                if self.remove_tree(entry.path):
                    log_action(self.logger, "RMDIR", f"(extraneous) {entry.path}", path=entry.path, is_dir=True)
                    stats[SyncResult.REMOVED] += 1
                else:
                    stats[SyncResult.ERROR] += 1
                continue

            try:
                entry.path.unlink()
            except OSError as e:
                log_action(self.logger, "REMOVE_FAIL", f"{entry.path} | {e}", path=entry.path, level=logging.ERROR)
                stats[SyncResult.ERROR] += 1
                continue
            log_action(self.logger, "REMOVE", f"(extraneous) {entry.path}", path=entry.path)
            stats[SyncResult.REMOVED] += 1
        return stats

    def remove_tree(self, path: Path) -> bool:
        """Delete a directory tree in-process, bottom-up; symlinks are unlinked, never followed."""
        ok = True
        try:
            children = list(scan_entries(path, self.logger))
        except OSError as e:
            log_action(self.logger, "RMDIR_FAIL", f"cannot list {path} | {e}", path=path, is_dir=True, level=logging.ERROR)
            return False

        for child in children:
            if child.is_dir:
                ok = self.remove_tree(child.path) and ok
                continue
            try:
                child.path.unlink()
            except OSError as e:
                log_action(self.logger, "REMOVE_FAIL", f"{child.path} | {e}", path=child.path, level=logging.ERROR)
                ok = False

        try:
            path.rmdir()
        except OSError as e:
            log_action(self.logger, "RMDIR_FAIL", f"{path} | {e}", path=path, is_dir=True, level=logging.ERROR)
            return False
        return ok


# -------------------------
# Reconciliation
# -------------------------

class SyncEngine:
    def __init__(self, config: SyncConfig, logger: Optional[logging.Logger] = None):
        self.config = config
        self.logger = logger or logging.getLogger(LOGGER_NAME)
        self.excludes = ExcludeMatcher(config.excludes)
        self.pruner = ExtraneousPruner(config, self.logger, self.excludes)

    def run_pass(self) -> Counter:
        """One full walk from the configured roots."""
        self.logger.info("PASS: start")
        start = time.monotonic()
        stats = self.reconcile(self.config.source_root, self.config.destination_root)
        self.logger.info("PASS: done in %.2fs | %s", time.monotonic() - start, format_stats(stats))
        return stats

    def reconcile(self, src_dir: Path, dst_dir: Path, rel_dir: str = "", stats: Optional[Counter] = None) -> Counter:
        """
        Bring ``dst_dir`` in line with ``src_dir``, then prune it.

        ``dst_dir`` must already exist. If ``src_dir`` cannot be listed the
        subtree is abandoned (logged, counted) without touching ``dst_dir``.
        """
        stats = Counter() if stats is None else stats
        try:
            entries = scan_entries(src_dir, self.logger)
        except OSError as e:
            log_action(self.logger, "SCAN", f"ERROR cannot list {src_dir} | {e}", path=src_dir, is_dir=True, level=logging.ERROR)
            stats[SyncResult.ERROR] += 1
            return stats

        try:
            for entry in entries:
                rel = _join_rel(rel_dir, entry.name)
                if self.excludes.is_excluded(rel, entry.is_dir):
                    stats[SyncResult.SKIPPED_EXCLUDED] += 1
                    continue

                dst_path = dst_dir / entry.name
                if entry.kind is EntryKind.SYMLINK:
                    stats[SyncResult.SKIPPED_SYMLINK] += 1
                elif entry.is_dir:
                    self._sync_directory(entry, dst_path, rel, stats)
                else:
                    stats[self._sync_file(entry, dst_path)] += 1
        except OSError as e:
            log_action(self.logger, "SCAN", f"ERROR listing {src_dir} aborted | {e}", path=src_dir, is_dir=True, level=logging.ERROR)
            stats[SyncResult.ERROR] += 1
            return stats

        self.pruner.prune(src_dir, dst_dir, rel_dir, stats)
        return stats

    def _sync_directory(self, entry: Entry, dst_path: Path, rel: str, stats: Counter) -> None:
        if not self.config.recursive:
            stats[SyncResult.SKIPPED_NO_RECURSION] += 1
            return
        try:
            self._ensure_directory(dst_path)
        except OSError as e:
            log_action(self.logger, "MKDIR", f"ERROR {dst_path} | {e}", path=dst_path, is_dir=True, level=logging.ERROR)
            stats[SyncResult.ERROR] += 1
            return
        self.reconcile(entry.path, dst_path, rel, stats)

    def _ensure_directory(self, path: Path) -> None:
        existing = lstat_entry(path)
        if existing is not None:
            if existing.is_dir:
                return
            path.unlink()
            log_action(self.logger, "REMOVE", f"(replaced by directory) {path}", path=path)
        path.mkdir(mode=DIR_MODE)
        log_action(self.logger, "MKDIR", str(path), path=path, is_dir=True)

    def _sync_file(self, entry: Entry, dst_path: Path) -> SyncResult:
        try:
            current = lstat_entry(dst_path)
            if current is not None and current.is_dir:
                if not self.config.recursive:
                    log_action(
                        self.logger,
                        "COPY",
                        f"ERROR directory in the way of {entry.path} -> {dst_path}",
                        path=dst_path,
                        is_dir=True,
                        level=logging.ERROR,
                    )
                    return SyncResult.ERROR
                if not self.pruner.remove_tree(dst_path):
                    return SyncResult.ERROR
                log_action(self.logger, "RMDIR", f"(replaced by file) {dst_path}", path=dst_path, is_dir=True)
            elif current is not None and entry.mtime_ns <= current.mtime_ns:
                return SyncResult.SKIPPED_UP_TO_DATE

            copy_file(entry.path, dst_path, entry.size, self.config.mmap_threshold)
        except (OSError, ValueError) as e:
            log_action(self.logger, "COPY", f"ERROR {entry.path} -> {dst_path} | {e}", path=dst_path, level=logging.ERROR)
            return SyncResult.ERROR

        log_action(self.logger, "COPY", f"{entry.path} -> {dst_path}", path=dst_path)
        return SyncResult.COPIED


# -------------------------
# Scheduling
# -------------------------

class DaemonScheduler:
    """
    Runs engine passes every ``interval_sec`` seconds, or sooner when woken.

    ``wake()`` only enqueues a reason on a SimpleQueue, whose ``put`` is safe
    from signal handlers and other threads. Everything else (logging, running
    the pass) happens in ``step()``. Passes never overlap: wakes that arrive
    during a pass stay queued and are drained together, so they cause exactly
    one more pass. There is no stop condition; ``run()`` loops until the
    process is terminated.
    """

    def __init__(self, config: SyncConfig, engine: SyncEngine, logger: Optional[logging.Logger] = None):
        self.interval_sec = config.interval_sec
        self.engine = engine
        self.logger = logger or logging.getLogger(LOGGER_NAME)
        self.passes = 0
        self._wakes = queue.SimpleQueue()
        self._syncing = False

    @property
    def syncing(self) -> bool:
        return self._syncing

    def wake(self, reason: str) -> None:
        self._wakes.put(reason)

    def has_pending_wake(self) -> bool:
        return not self._wakes.empty()

    def wait(self, timeout: Optional[float] = None) -> tuple[Optional[str], int]:
        """
        Block until a wake arrives or ``timeout`` (default: the interval) elapses.

        Returns ``(reason, coalesced)``; reason is None when the timer ran out,
        coalesced counts the extra queued wakes folded into this one.
        """
        timeout = self.interval_sec if timeout is None else timeout
        try:
            reason = self._wakes.get(timeout=max(0.0, timeout))
        except queue.Empty:
            return None, 0

        coalesced = 0
        while True:
            try:
                self._wakes.get_nowait()
            except queue.Empty:
                return reason, coalesced
            coalesced += 1

    def step(self) -> Optional[str]:
        reason, coalesced = self.wait()
        if reason is not None:
            suffix = f" (+{coalesced} coalesced)" if coalesced else ""
            log_action(self.logger, "WAKE", f"woken by {reason}{suffix}")
        self.run_pass()
        return reason

    def run_pass(self) -> None:
        if self._syncing:
            raise RuntimeError("a reconciliation pass is already running")
        self._syncing = True
        try:
            self.engine.run_pass()
        except Exception as e:
            log_action(self.logger, "PASS_FAIL", f"pass aborted | {e}", level=logging.ERROR)
        finally:
            self._syncing = False
            self.passes += 1

    def run(self) -> None:
        self.logger.info("Scheduler: first pass now, then every %gs", self.interval_sec)
        self.run_pass()
        while True:
            self.step()


# -------------------------
# Source watching
# -------------------------

class SourceChangeHandler(FileSystemEventHandler):
    """Turns changes under the source into scheduler wakes; directory mtime churn is ignored."""

    def __init__(self, scheduler: DaemonScheduler):
        self.scheduler = scheduler

    def on_created(self, event):
        self.scheduler.wake(f"created {event.src_path}")

    def on_deleted(self, event):
        self.scheduler.wake(f"deleted {event.src_path}")

    def on_moved(self, event):
        self.scheduler.wake(f"moved {event.src_path}")

    def on_modified(self, event):
        if event.is_directory:
            return
        self.scheduler.wake(f"modified {event.src_path}")


def start_source_watcher(scheduler: DaemonScheduler, config: SyncConfig) -> Observer:
    observer = Observer()
    observer.schedule(SourceChangeHandler(scheduler), str(config.source_root), recursive=config.recursive)
    observer.start()
    return observer


# -------------------------
# Process hosting
# -------------------------

def detach(logger: logging.Logger) -> bool:
    """Fork into the background; the parent exits. False where fork does not exist."""
    if not hasattr(os, "fork"):
        logger.warning("Background mode is not available on this platform; staying in foreground.")
        return False
    if os.fork() > 0:
        os._exit(0)
    os.setsid()
    return True


def install_wake_signal(scheduler: DaemonScheduler) -> Optional[int]:
    signum = getattr(signal, "SIGUSR1", None)
    if signum is None:
        return None
    signal.signal(signum, lambda _signum, _frame: scheduler.wake("SIGUSR1"))
    return signum


# -------------------------
# Main
# -------------------------

def main(argv: Optional[list[str]] = None) -> int:
    args = parse_args(sys.argv[1:] if argv is None else argv)
    try:
        cfg = build_effective_config(args)
    except ValueError as e:
        print(f"Config error: {e}", file=sys.stderr)
        return 2

    try:
        logger = setup_logger(cfg.log_dir.expanduser().resolve() if cfg.log_dir else None)
    except OSError as e:
        print(f"Config error: cannot open log directory {cfg.log_dir}: {e}", file=sys.stderr)
        return 2

    try:
        source, destination = validate_paths(cfg.sync.source_root, cfg.sync.destination_root)
        logger.info("Source     : %s", source)
        logger.info("Destination: %s", destination)
    except (OSError, ValueError) as e:
        logger.error("Config error: %s", e)
        return 2

    sync_cfg = dataclasses.replace(cfg.sync, source_root=source, destination_root=destination)

    if not cfg.foreground:
        detach(logger)

    logger.info(
        "Daemon pid %d | recursive=%s interval=%gs mmap_threshold=%d",
        os.getpid(),
        sync_cfg.recursive,
        sync_cfg.interval_sec,
        sync_cfg.mmap_threshold,
    )

    engine = SyncEngine(sync_cfg, logger)
    scheduler = DaemonScheduler(sync_cfg, engine, logger)
    if install_wake_signal(scheduler) is not None:
        logger.info("Send SIGUSR1 to pid %d for an immediate pass.", os.getpid())

    observer = None
    if cfg.watch:
        observer = start_source_watcher(scheduler, sync_cfg)
        logger.info("Watching %s for changes", source)

    try:
        scheduler.run()
    except KeyboardInterrupt:
        logger.info("Stopping...")
    finally:
        if observer is not None:
            observer.stop()
            observer.join(timeout=10)
        logger.info("Stopped.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
