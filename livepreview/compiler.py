"""Adapters for the external document compiler."""
from __future__ import annotations

import os
import shutil
import signal
import subprocess
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Protocol

from .errors import CompileError
from .logs import _log

DEFAULT_TIMEOUT = 120.0
CANCEL_GRACE = 2.0


class Compiler(Protocol):
    """Anything that renders ``source`` and returns the path of the artifact.

    Implementations raise CompileError when the document cannot be rendered.
    An engine that can abort a running compile may also provide ``cancel()``.
    """

    def compile(self, source: Path) -> Path: ...


def typst_available(executable: Optional[str] = None) -> bool:
    """
    Return True if a typst executable is available on PATH (or via TYPST env).
    """
    cmd = executable or os.environ.get("TYPST") or "typst"
    return bool(shutil.which(cmd))


def _signal_group(proc: subprocess.Popen, *, kill: bool = False) -> None:
    # typst runs in its own session, so the whole group goes (wrapper scripts included).
    try:
        if os.name != "nt":
            os.killpg(proc.pid, signal.SIGKILL if kill else signal.SIGTERM)
        elif kill:
            proc.kill()
        else:
            proc.terminate()
    except ProcessLookupError:
        pass
    except OSError:
        proc.kill()


@dataclass
class TypstCompiler:
    """Runs ``typst compile`` in a subprocess.

    The output format follows the output suffix (``.pdf``, ``.png``, ``.svg``);
    ``ppi`` only matters for PNG output. After cancel() the compiler refuses
    to start new runs.
    """

    output: Path
    font_paths: List[Path] = field(default_factory=list)
    ppi: Optional[float] = None
    root: Optional[Path] = None
    executable: str = "typst"
    timeout: float = DEFAULT_TIMEOUT
    _proc: Optional[subprocess.Popen] = field(default=None, init=False, repr=False, compare=False)
    _proc_lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False, compare=False)
    _cancelled: bool = field(default=False, init=False, repr=False, compare=False)

    def command(self, source: Path) -> List[str]:
        cmd = [self.executable, "compile"]
        if self.root is not None:
            cmd += ["--root", str(self.root)]
        for fp in self.font_paths:
            cmd += ["--font-path", str(fp)]
        if self.ppi is not None:
            cmd += ["--ppi", f"{self.ppi:g}"]
        cmd += [str(source), str(self.output)]
        return cmd

    def compile(self, source: Path) -> Path:
        if not typst_available(self.executable):
            raise CompileError(f"typst executable not found: {self.executable}")
        cmd = self.command(source)
        t0 = time.perf_counter()
        with self._proc_lock:
            if self._cancelled:
                raise CompileError("typst compile cancelled")
            try:
                proc = subprocess.Popen(
                    cmd,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    text=True,
                    start_new_session=(os.name != "nt"),
                )
            except OSError as e:
                raise CompileError(f"failed to run typst: {e}") from e
            self._proc = proc
        try:
            try:
                _stdout, stderr = proc.communicate(timeout=self.timeout)
            except subprocess.TimeoutExpired:
                _signal_group(proc, kill=True)
                proc.communicate()
                raise CompileError(f"typst timed out after {self.timeout:g}s") from None
        finally:
            with self._proc_lock:
                self._proc = None
        elapsed = time.perf_counter() - t0
        if self._cancelled:
            raise CompileError("typst compile cancelled", stderr)
        if proc.returncode != 0:
            _log("compile", f"[compile] typst fail code={proc.returncode} elapsed={elapsed:.3f}s")
            raise CompileError(f"typst exited with status {proc.returncode}", stderr)
        if not self.output.exists():
            raise CompileError(f"typst reported success but wrote no output: {self.output}")
        _log("compile", f"[compile] typst ok elapsed={elapsed:.3f}s out={self.output}")
        return self.output

    def cancel(self, grace: float = CANCEL_GRACE) -> bool:
        """Stop the running typst process, if any, and refuse later compiles.

        TERM first, then KILL after ``grace`` seconds. Returns True if a
        process was signaled.
        """
        with self._proc_lock:
            self._cancelled = True
            proc = self._proc
        if proc is None or proc.poll() is not None:
            return False
        _log("compile", f"[compile] cancelling typst pid={proc.pid}")
        _signal_group(proc)
        deadline = time.monotonic() + grace
        while time.monotonic() < deadline:
            if proc.poll() is not None:
                return True
            time.sleep(0.05)
        _signal_group(proc, kill=True)
        return True
