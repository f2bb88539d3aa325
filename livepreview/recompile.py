"""Runs the compiler on demand and publishes new artifact versions."""
from __future__ import annotations

import asyncio
import hashlib
import io
import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from PIL import Image, UnidentifiedImageError

from .compiler import Compiler
from .errors import CompileError
from .logs import _log
from .paths import guess_media_type
from .registry import ConnectionRegistry


@dataclass(frozen=True)
class CompiledArtifact:
    """Immutable snapshot of the last successful compile.

    ``data`` holds the bytes captured right after that compile, so nothing
    written to ``path`` later (including by a failed compile) changes what is
    served for this version.
    """

    path: Optional[Path] = None
    version: int = 0
    last_success_at: Optional[datetime] = None
    digest: str = ""
    data: bytes = b""
    media_type: str = "application/pdf"
    duration: float = 0.0
    size: Optional[Tuple[int, int]] = None

    @property
    def ready(self) -> bool:
        return self.version > 0

    def summary(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "path": str(self.path) if self.path else None,
            "digest": self.digest or None,
            "bytes": len(self.data),
            "media_type": self.media_type,
            "last_success_at": self.last_success_at.isoformat() if self.last_success_at else None,
            "duration": round(self.duration, 4),
            "size": list(self.size) if self.size else None,
        }


def _image_size(data: bytes, media_type: str) -> Optional[Tuple[int, int]]:
    # Page images (png/jpeg/webp) get their pixel size recorded for the viewer.
    if not media_type.startswith("image/") or media_type == "image/svg+xml":
        return None
    try:
        with Image.open(io.BytesIO(data)) as im:
            return int(im.width), int(im.height)
    except (UnidentifiedImageError, OSError):
        return None


class RecompileTrigger:
    """
    Owner of the CompiledArtifact.

    recompile() is blocking and meant to run in a worker thread; calls are
    serialized so only one compile runs at a time. A failed compile leaves
    the current artifact untouched and broadcasts nothing.
    """

    def __init__(self, compiler: Compiler, source: Path, registry: ConnectionRegistry) -> None:
        self.compiler = compiler
        self.source = Path(source)
        self.registry = registry
        self._compile_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._artifact = CompiledArtifact()
        self._closed = False
        self.attempts = 0
        self.failures = 0
        self.last_error: Optional[Dict[str, Any]] = None

    def current(self) -> CompiledArtifact:
        with self._state_lock:
            return self._artifact

    def close(self) -> None:
        """Discard the result of any compile still running or started later.

        Compilers that provide cancel() have their running compile aborted.
        """
        with self._state_lock:
            self._closed = True
        cancel = getattr(self.compiler, "cancel", None)
        if callable(cancel) and cancel():
            _log("compile", "[compile] running compile cancelled for shutdown")

    @property
    def closed(self) -> bool:
        with self._state_lock:
            return self._closed

    async def arecompile(self) -> Optional[CompiledArtifact]:
        return await asyncio.to_thread(self.recompile)

    def recompile(self) -> Optional[CompiledArtifact]:
        """Compile once. Returns the new snapshot, or None on failure/shutdown."""
        with self._compile_lock:
            if self.closed:
                return None
            self.attempts += 1
            t0 = time.perf_counter()
            try:
                out = Path(self.compiler.compile(self.source))
                data = out.read_bytes()
            except CompileError as e:
                if self.closed:
                    _log("compile", f"[compile] stopped during shutdown: {e.message}")
                    return None
                self._record_failure(str(e))
                return None
            except Exception as e:  # noqa: BLE001
                self._record_failure(f"unexpected compiler error: {e!r}")
                return None
            elapsed = time.perf_counter() - t0
            media_type = guess_media_type(out)
            with self._state_lock:
                if self._closed:
                    _log("compile", "[compile] result discarded; shutting down")
                    return None
                art = CompiledArtifact(
                    path=out,
                    version=self._artifact.version + 1,
                    last_success_at=datetime.now(timezone.utc),
                    digest=hashlib.sha256(data).hexdigest(),
                    data=data,
                    media_type=media_type,
                    duration=elapsed,
                    size=_image_size(data, media_type),
                )
                self._artifact = art
                self.last_error = None
            _log("compile", f"[compile] ok version={art.version} elapsed={elapsed:.3f}s bytes={len(data)} digest={art.digest[:12]}")
            # Still under the compile lock, so versions reach the registry in order.
            self.registry.broadcast(art.version)
            return art

    def _record_failure(self, message: str) -> None:
        with self._state_lock:
            self.failures += 1
            self.last_error = {
                "message": message,
                "at": datetime.now(timezone.utc).isoformat(),
                "serving_version": self._artifact.version,
            }
        _log("compile", f"[compile] failed; keeping version {self.current().version}: {message}", logging.ERROR)
