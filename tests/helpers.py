import stat
import threading
import time
from pathlib import Path
from typing import Optional

from livepreview.errors import CompileError
from livepreview.registry import ConnectionRegistry
from livepreview.watcher import ChangeEvent, ChangeKind


def _wait_for(predicate, *, timeout: float = 2.0, interval: float = 0.01) -> bool:
    deadline = time.perf_counter() + timeout
    while time.perf_counter() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return False


def _event(path: Path, kind: ChangeKind = ChangeKind.MODIFIED, at: float = 0.0) -> ChangeEvent:
    return ChangeEvent(path=Path(path), kind=kind, observed_at=at)


class FakeCompiler:
    """Stand-in for typst: writes a small fake PDF whose body names the call number."""

    def __init__(self, output: Path) -> None:
        self.output = Path(output)
        self.calls = 0
        self.fail = False
        # When set, a failing compile also clobbers the output file.
        self.corrupt_on_fail = False
        self.gate: Optional[threading.Event] = None
        self.entered = threading.Event()
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def compile(self, source: Path) -> Path:
        with self._lock:
            self.calls += 1
            n = self.calls
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            self.entered.set()
            if self.gate is not None:
                self.gate.wait(5)
            if self.fail:
                if self.corrupt_on_fail:
                    self.output.write_bytes(b"garbage")
                raise CompileError("compilation failed", "error: unknown variable: foo")
            self.output.write_bytes(f"%PDF-1.7 fake build {n} of {Path(source).name}".encode())
            return self.output
        finally:
            with self._lock:
                self.active -= 1


class RecordingRegistry(ConnectionRegistry):
    def __init__(self) -> None:
        super().__init__()
        self.versions = []

    def broadcast(self, version: int) -> int:
        self.versions.append(version)
        return super().broadcast(version)


def _fake_typst(directory: Path, body: str) -> str:
    """Write an executable shell script named ``typst`` and return its path."""
    exe = Path(directory) / "typst"
    exe.write_text("#!/bin/sh\n" + body)
    exe.chmod(exe.stat().st_mode | stat.S_IXUSR)
    return str(exe)
