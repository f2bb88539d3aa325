"""Filesystem change detection for the watch root.

Wraps ``watchfiles.awatch`` and feeds a bounded asyncio queue with
ChangeEvent records. A single consumer (the debounce aggregator) reads the
queue; nothing is persisted.
"""
from __future__ import annotations

import asyncio
import enum
import logging
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, FrozenSet, Iterable, Optional

from watchfiles import Change, awatch

from .errors import StartupFailure
from .logs import _log

# Back-off before re-establishing a watch that failed while running.
RESTART_DELAY = 0.5
STOP_GRACE = 1.0


class ChangeKind(enum.Enum):
    CREATED = "created"
    MODIFIED = "modified"
    REMOVED = "removed"
    RENAME_OR_OTHER = "rename_or_other"


_KIND_BY_CHANGE = {
    Change.added: ChangeKind.CREATED,
    Change.modified: ChangeKind.MODIFIED,
    Change.deleted: ChangeKind.REMOVED,
}


@dataclass(frozen=True)
class ChangeEvent:
    path: Path
    kind: ChangeKind
    observed_at: float = field(default_factory=time.monotonic)
    # Stand-in for events lost to a full queue or a watch error.
    overflow: bool = False

    @classmethod
    def overflow_marker(cls, root: Path) -> "ChangeEvent":
        return cls(path=root, kind=ChangeKind.RENAME_OR_OTHER, overflow=True)


@dataclass(frozen=True)
class WatchTarget:
    """The directory being watched and what counts as a relevant change in it."""

    root: Path
    extensions: FrozenSet[str]
    ignored: FrozenSet[Path] = frozenset()

    @classmethod
    def build(cls, root: Path, extensions: Iterable[str], ignored: Iterable[Path] = ()) -> "WatchTarget":
        return cls(
            root=Path(root).expanduser().resolve(),
            extensions=frozenset(e.lower() for e in extensions),
            ignored=frozenset(Path(p).expanduser().resolve() for p in ignored),
        )

    def is_relevant(self, event: ChangeEvent) -> bool:
        if event.overflow:
            return True
        p = Path(event.path)
        if p.suffix.lower() not in self.extensions:
            return False
        try:
            if p.resolve() in self.ignored:
                return False
        except OSError:
            return True
        return True


def check_watch_root(root: Path) -> None:
    """Raise StartupFailure if ``root`` cannot be watched."""
    if not root.exists():
        raise StartupFailure(f"watch root does not exist: {root}")
    if not root.is_dir():
        raise StartupFailure(f"watch root is not a directory: {root}")
    if not os.access(root, os.R_OK | os.X_OK):
        raise StartupFailure(f"watch root is not readable: {root}")


class ChangeDetector:
    """
    Background task turning OS notifications for ``target.root`` into
    ChangeEvent items on ``queue``.

    start() validates the root synchronously; watching problems that
    happen later are logged and the watch is re-established until stop().
    """

    def __init__(
        self,
        target: WatchTarget,
        queue: "asyncio.Queue[ChangeEvent]",
        *,
        watch: Callable[..., Any] = awatch,
        restart_delay: float = RESTART_DELAY,
    ) -> None:
        self.target = target
        self._queue = queue
        self._watch = watch
        self._restart_delay = restart_delay
        self._stop: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None
        self._overflow_task: Optional[asyncio.Task] = None
        self.dropped = 0

    def start(self) -> None:
        if self.is_running():
            return
        check_watch_root(self.target.root)
        self._stop = asyncio.Event()
        self._task = asyncio.create_task(self._run(self._stop), name="change-detector")
        _log("watch", f"[watch] watching root={self.target.root}")

    async def stop(self) -> None:
        if self._stop is not None:
            self._stop.set()
        if self._task is not None and not self._task.done():
            # Let awatch notice the stop event and release the OS watch itself.
            await asyncio.wait({self._task}, timeout=STOP_GRACE)
        for task in (self._task, self._overflow_task):
            if task is None or task.done():
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._task = None
        self._overflow_task = None
        self._stop = None
        _log("watch", f"[watch] stopped root={self.target.root}")

    def is_running(self) -> bool:
        return bool(self._task and not self._task.done())

    async def _run(self, stop: asyncio.Event) -> None:
        root = str(self.target.root)
        while not stop.is_set():
            try:
                async for changes in self._watch(root, stop_event=stop, debounce=50, step=25, recursive=True):
                    now = time.monotonic()
                    for change, raw_path in sorted(changes, key=lambda c: c[1]):
                        kind = _KIND_BY_CHANGE.get(change, ChangeKind.RENAME_OR_OTHER)
                        self._emit(ChangeEvent(path=Path(raw_path), kind=kind, observed_at=now))
            except asyncio.CancelledError:
                raise
            except Exception as e:  # noqa: BLE001
                if stop.is_set():
                    break
                _log("watch", f"[watch] watch error root={root} err={e!r}; restarting", logging.WARNING)
                self._signal_overflow()
                try:
                    await asyncio.wait_for(stop.wait(), timeout=self._restart_delay)
                except asyncio.TimeoutError:
                    pass
                continue
            # awatch returned without error: only happens once stop is set.
            if not stop.is_set():
                await asyncio.sleep(self._restart_delay)

    def _emit(self, event: ChangeEvent) -> None:
        if self._overflow_task is not None and not self._overflow_task.done():
            # The pending overflow marker already stands for this event.
            self.dropped += 1
            return
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            _log("watch", f"[watch] event queue full; dropping events and assuming dirty (dropped={self.dropped})", logging.WARNING)
            self._signal_overflow()

    def _signal_overflow(self) -> None:
        if self._overflow_task is not None and not self._overflow_task.done():
            return
        marker = ChangeEvent.overflow_marker(self.target.root)
        self._overflow_task = asyncio.create_task(self._queue.put(marker), name="change-detector-overflow")
