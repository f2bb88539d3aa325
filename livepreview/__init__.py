"""Watch a document, recompile it on change and live-reload browser viewers."""
from __future__ import annotations

from .compiler import Compiler, TypstCompiler
from .config import Settings
from .errors import CompileError, PathBlockedError, StartupFailure
from .registry import ConnectionRegistry
from .server import PreviewServer

__all__ = [
    "Compiler",
    "TypstCompiler",
    "Settings",
    "CompileError",
    "PathBlockedError",
    "StartupFailure",
    "ConnectionRegistry",
    "PreviewServer",
]
