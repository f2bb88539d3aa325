"""The preview server object: owns the watch/compile/notify pipeline."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

from .compiler import Compiler, TypstCompiler
from .config import Settings
from .debounce import DebounceAggregator
from .logs import _log
from .recompile import RecompileTrigger
from .registry import ConnectionRegistry
from .watcher import ChangeDetector, ChangeEvent, WatchTarget, check_watch_root


class PreviewServer:
    """
    One watched directory, one output artifact.

    start() raises StartupFailure when the watch root is unusable; stop()
    needs no cooperation from connected clients.
    """

    def __init__(self, settings: Settings, compiler: Optional[Compiler] = None) -> None:
        self.settings = settings
        self.target = WatchTarget.build(
            settings.root_path,
            settings.extensions,
            ignored=[settings.output_path],
        )
        self.registry = ConnectionRegistry(settings.client_queue_size)
        self.compiler: Compiler = compiler or TypstCompiler(
            output=settings.output_path,
            font_paths=list(settings.font_paths),
            ppi=settings.ppi,
            root=settings.root_path,
            executable=settings.typst,
        )
        self.trigger = RecompileTrigger(self.compiler, settings.source_path, self.registry)
        self.events: Optional[asyncio.Queue[ChangeEvent]] = None
        self.detector: Optional[ChangeDetector] = None
        self.aggregator: Optional[DebounceAggregator] = None
        self.started = False

    async def start(self) -> None:
        check_watch_root(self.target.root)
        if not self.settings.source_path.is_relative_to(self.target.root):
            _log("watch", f"[watch] source {self.settings.source_path} is outside root {self.target.root}; edits to it are not watched", logging.WARNING)
        if self.settings.watch:
            self.events = asyncio.Queue(maxsize=self.settings.queue_size)
            self.detector = ChangeDetector(self.target, self.events)
            self.detector.start()
            self.aggregator = DebounceAggregator(
                self.target,
                self.events,
                self.trigger.arecompile,
                quiet=self.settings.quiet_period,
            )
            self.aggregator.start()
        art = await self.trigger.arecompile()
        if art is not None:
            _log("compile", f"[compile] initial compilation succeeded in {art.duration:.3f}s; watching for changes")
        self.started = True

    async def stop(self) -> None:
        # cancel() may wait for the compiler process to exit
        await asyncio.to_thread(self.trigger.close)
        self.registry.close()
        if self.detector is not None:
            await self.detector.stop()
        if self.aggregator is not None:
            await self.aggregator.stop()
        self.started = False
        _log("watch", "[watch] server stopped")

    def status(self) -> Dict[str, Any]:
        art = self.trigger.current()
        return {
            "root": str(self.target.root),
            "source": str(self.settings.source_path),
            "watching": bool(self.detector and self.detector.is_running()),
            "artifact": art.summary(),
            "last_error": self.trigger.last_error,
            "attempts": self.trigger.attempts,
            "failures": self.trigger.failures,
            "signals": self.aggregator.signals if self.aggregator else 0,
            "dropped_events": self.detector.dropped if self.detector else 0,
            "clients": self.registry.count(),
        }
