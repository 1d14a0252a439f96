# watch.py
from __future__ import annotations

import queue
import threading
import time
from enum import Enum
from pathlib import Path
from typing import Iterable, List, Optional, Set

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .devserver import ReloadChannel
from .log import get_logger
from .model import BuildReport
from .paths import glob_base

log = get_logger("assetflow.watch")

DEFAULT_DEBOUNCE = 0.2


class State(str, Enum):
    IDLE = "idle"
    DEBOUNCING = "debouncing"
    RUNNING = "running"
    STOPPED = "stopped"


class _EventHandler(FileSystemEventHandler):
    """Forwards file events (both ends of a move) to the watch loop."""

    def __init__(self, loop: "WatchLoop"):
        super().__init__()
        self._loop = loop

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory or event.event_type in ("opened", "closed", "closed_no_write"):
            return
        self._loop.notify(event.src_path)
        dest = getattr(event, "dest_path", "")
        if dest:
            self._loop.notify(dest)


def watch_roots(root: Path, globs: Iterable[str]) -> List[Path]:
    """Existing directories to observe: the glob bases, nested ones dropped."""
    bases = sorted({(root / glob_base(g)).resolve() for g in globs})
    out: List[Path] = []
    for b in bases:
        if not b.is_dir():
            continue
        if any(o == b or o in b.parents for o in out):
            continue
        out.append(b)
    return out


class WatchLoop:
    """
    Debounced rebuild loop.

    IDLE -> DEBOUNCING on the first event; further events extend the window.
    When the window expires all paths seen form one change set and the
    executor runs once (RUNNING), then the report is published and the loop
    returns to IDLE. Events that arrive while RUNNING trigger at most one
    immediate follow-up cycle.
    """

    def __init__(
        self,
        executor,
        channel: Optional[ReloadChannel] = None,
        *,
        debounce: float = DEFAULT_DEBOUNCE,
        ignore: Iterable[str | Path] = (),
    ):
        self.executor = executor
        self.channel = channel or ReloadChannel()
        self.debounce = debounce
        self.ignore = [Path(p).resolve() for p in ignore]
        self.state = State.IDLE
        self.cycles = 0
        self.last_report: Optional[BuildReport] = None
        self._events: "queue.Queue[Path]" = queue.Queue()
        self._stop = threading.Event()
        self._observer = None
        self._thread: Optional[threading.Thread] = None

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def notify(self, path: str | Path) -> None:
        p = Path(path).resolve()
        if any(p == i or i in p.parents for i in self.ignore):
            return
        self._events.put(p)

    def _drain(self) -> Set[Path]:
        paths: Set[Path] = set()
        while True:
            try:
                paths.add(self._events.get_nowait())
            except queue.Empty:
                return paths

    def _collect(self, first: Path) -> Set[Path]:
        self.state = State.DEBOUNCING
        paths = {first}
        deadline = time.monotonic() + self.debounce
        while not self._stop.is_set():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            try:
                paths.add(self._events.get(timeout=remaining))
            except queue.Empty:
                break
            deadline = time.monotonic() + self.debounce
        return paths

    # ------------------------------------------------------------------
    # Cycles
    # ------------------------------------------------------------------

    def run_cycle(self, paths: Iterable[Path]) -> Optional[BuildReport]:
        change_set = frozenset(paths)
        self.state = State.RUNNING
        self.cycles += 1
        log.info("Change detected (%d file(s)), rebuilding", len(change_set))
        try:
            report = self.executor.run(change_set)
        except Exception:  # noqa: BLE001
            log.exception("Rebuild crashed; still watching")
            report = None
        else:
            self.last_report = report
            for msg in report.to_messages():
                self.channel.publish(msg)
        finally:
            self.state = State.IDLE
        return report

    def step(self, timeout: Optional[float] = None) -> Optional[BuildReport]:
        """
        Wait up to `timeout` for an event, debounce, run one cycle plus at
        most one follow-up. Returns the last report, or None if idle.
        """
        try:
            first = self._events.get(timeout=timeout)
        except queue.Empty:
            return None
        report = self.run_cycle(self._collect(first))
        pending = self._drain()
        if pending and not self._stop.is_set():
            log.debug("Events arrived during rebuild, running one follow-up")
            report = self.run_cycle(pending)
        return report

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _loop(self) -> None:
        while not self._stop.is_set():
            self.step(timeout=0.1)
        self.state = State.STOPPED

    def start(self, roots: Iterable[Path] = ()) -> "WatchLoop":
        roots = list(roots)
        if roots:
            handler = _EventHandler(self)
            self._observer = Observer()
            for r in roots:
                self._observer.schedule(handler, str(r), recursive=True)
                log.info("Watching %s", r)
            self._observer.start()
        self._thread = threading.Thread(target=self._loop, name="assetflow-watch", daemon=True)
        self._thread.start()
        return self

    def stop(self) -> None:
        self._stop.set()
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None
        self.state = State.STOPPED

    def run_forever(self, roots: Iterable[Path] = ()) -> None:
        """Block until KeyboardInterrupt."""
        self.start(roots)
        try:
            while not self._stop.is_set():
                time.sleep(0.5)
        except KeyboardInterrupt:
            log.info("Watch interrupted")
        finally:
            self.stop()
