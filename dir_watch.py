"""Directory change sources and a per-path debouncer.

Both watchers deliver ``on_change(rel_path)`` on the event loop thread with
``rel_path`` relative to the watched root and using ``/`` separators.
"""
from __future__ import annotations

import asyncio
import logging
import os
from typing import Any, Callable, Dict, Optional, Tuple

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

log = logging.getLogger(__name__)

DEBOUNCE_S = 0.2

ChangeCallback = Callable[[str], None]


class Debouncer:
    """Collapse repeated triggers for the same key into one call.

    A new trigger for a key cancels its pending timer and starts over, so the
    callback only sees the settled state.
    """

    def __init__(self, delay: float = DEBOUNCE_S) -> None:
        self.delay = delay
        self._timers: Dict[str, asyncio.TimerHandle] = {}

    def trigger(self, key: str, callback: Callable[..., Any], *args: Any) -> None:
        handle = self._timers.pop(key, None)
        if handle is not None:
            handle.cancel()
        loop = asyncio.get_running_loop()
        self._timers[key] = loop.call_later(self.delay, self._fire, key, callback, args)

    def _fire(self, key: str, callback: Callable[..., Any], args: Tuple[Any, ...]) -> None:
        self._timers.pop(key, None)
        try:
            callback(*args)
        except Exception:
            log.exception("debounced handler for %s failed", key)

    def pending(self) -> int:
        return len(self._timers)

    def cancel_all(self) -> None:
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()


def _relative(root: str, path: str) -> Optional[str]:
    rel = os.path.relpath(path, root)
    if rel == "." or rel.startswith(".."):
        return None
    return rel.replace(os.sep, "/")


class PollingWatcher:
    """Rescans ``root`` every ``interval`` seconds and reports changed files.

    A missing root is treated as empty, so the watcher picks the directory up
    whenever it appears.
    """

    def __init__(
        self,
        root: str,
        on_change: ChangeCallback,
        interval: float = 1.0,
        recursive: bool = True,
    ) -> None:
        self.root = root
        self.on_change = on_change
        self.interval = interval
        self.recursive = recursive
        self._seen: Dict[str, Tuple[float, int]] = {}
        self._task: Optional[asyncio.Task] = None

    def _scan(self) -> Dict[str, Tuple[float, int]]:
        found: Dict[str, Tuple[float, int]] = {}
        if not os.path.isdir(self.root):
            return found
        for dirpath, dirnames, filenames in os.walk(self.root):
            for name in filenames:
                path = os.path.join(dirpath, name)
                try:
                    st = os.stat(path)
                except OSError:
                    continue
                rel = _relative(self.root, path)
                if rel is not None:
                    found[rel] = (st.st_mtime, st.st_size)
            if not self.recursive:
                dirnames.clear()
        return found

    def prime(self) -> None:
        """Record the current tree without reporting it."""
        self._seen = self._scan()

    def scan_once(self) -> int:
        current = self._scan()
        changed = [rel for rel, sig in current.items() if self._seen.get(rel) != sig]
        changed.extend(rel for rel in self._seen if rel not in current)
        self._seen = current
        for rel in sorted(changed):
            self.on_change(rel)
        return len(changed)

    async def _run(self) -> None:
        try:
            while True:
                await asyncio.sleep(self.interval)
                self.scan_once()
        except asyncio.CancelledError:
            return

    def start(self) -> None:
        self.prime()
        self._task = asyncio.get_running_loop().create_task(self._run(), name=f"poll:{self.root}")
        log.info("polling %s every %.1fs", self.root, self.interval)

    def stop(self) -> None:
        if self._task:
            self._task.cancel()
            self._task = None


class _Handler(FileSystemEventHandler):
    def __init__(self, watcher: "NativeWatcher") -> None:
        self.watcher = watcher

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.event_type in ("opened", "closed", "closed_no_write"):
            return
        self.watcher._from_thread(event.src_path)
        dest = getattr(event, "dest_path", "")
        if dest:
            self.watcher._from_thread(dest)


class NativeWatcher:
    """OS notifications via watchdog, marshalled onto the event loop.

    If ``root`` does not exist yet, its parent is watched until it appears.
    """

    def __init__(self, root: str, on_change: ChangeCallback, recursive: bool = True) -> None:
        self.root = os.path.abspath(root)
        self.on_change = on_change
        self.recursive = recursive
        self._observer: Optional[Any] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._waiting_for_root = False

    def _from_thread(self, path: Any) -> None:
        if isinstance(path, bytes):
            path = os.fsdecode(path)
        if self._loop is not None and not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._dispatch, str(path))

    def _dispatch(self, path: str) -> None:
        if self._waiting_for_root:
            if os.path.abspath(path) == self.root and os.path.isdir(self.root):
                log.info("%s appeared; starting watcher", self.root)
                self._restart()
                try:
                    entries = sorted(os.listdir(self.root))
                except OSError:
                    entries = []
                for name in entries:
                    self.on_change(name)
            return
        rel = _relative(self.root, path)
        if rel is not None:
            self.on_change(rel)

    def _schedule(self) -> None:
        observer = Observer()
        handler = _Handler(self)
        if os.path.isdir(self.root):
            self._waiting_for_root = False
            observer.schedule(handler, self.root, recursive=self.recursive)
            log.info("watching %s", self.root)
        else:
            parent = os.path.dirname(self.root)
            os.makedirs(parent, exist_ok=True)
            self._waiting_for_root = True
            observer.schedule(handler, parent, recursive=False)
            log.info("no %s yet; watching %s for it", self.root, parent)
        observer.daemon = True
        observer.start()
        self._observer = observer

    def _restart(self) -> None:
        # Runs on the loop thread; the old observer thread is joined off-loop.
        old = self._observer
        self._observer = None
        if old is not None:
            old.stop()
            if self._loop is not None:
                self._loop.run_in_executor(None, old.join, 5)
        self._schedule()

    def start(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._schedule()

    def stop(self) -> None:
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None


def make_watcher(
    mode: str,
    root: str,
    on_change: ChangeCallback,
    recursive: bool = True,
    poll_interval: float = 1.0,
):
    if mode == "poll":
        return PollingWatcher(root, on_change, interval=poll_interval, recursive=recursive)
    return NativeWatcher(root, on_change, recursive=recursive)


def start_watcher(
    mode: str,
    root: str,
    on_change: ChangeCallback,
    recursive: bool = True,
    poll_interval: float = 1.0,
):
    """Build and start a watcher; in ``auto`` mode fall back to polling."""
    watcher = make_watcher(mode, root, on_change, recursive=recursive, poll_interval=poll_interval)
    try:
        watcher.start()
    except OSError as exc:
        if mode != "auto":
            raise
        log.warning("native watch unavailable for %s (%s); polling instead", root, exc)
        watcher = PollingWatcher(root, on_change, interval=poll_interval, recursive=recursive)
        watcher.start()
    return watcher
