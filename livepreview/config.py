"""Server settings.

Values come from the environment first and can be overridden by CLI flags:
  PREVIEW_SOURCE, PREVIEW_OUTPUT, PREVIEW_ROOT
  HOST, PORT
  PREVIEW_DEBOUNCE_MS
  PREVIEW_FONT_PATHS   (os.pathsep separated)
  PREVIEW_PPI
  TYPST                (compiler executable)
"""
from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

# Source format first, then images, data and markup the document may include.
SOURCE_EXTENSIONS = (".typ",)
IMAGE_EXTENSIONS = (".png", ".jpg", ".jpeg", ".gif", ".svg", ".webp")
DATA_EXTENSIONS = (".json", ".yaml", ".yml", ".toml", ".csv", ".xml", ".txt")
MARKUP_EXTENSIONS = (".bib", ".md", ".html")
DEFAULT_EXTENSIONS = SOURCE_EXTENSIONS + IMAGE_EXTENSIONS + DATA_EXTENSIONS + MARKUP_EXTENSIONS

DEFAULT_DEBOUNCE_MS = 300


def _normalize_ext(ext: str) -> str:
    e = str(ext).strip().lower()
    if not e:
        return e
    return e if e.startswith(".") else f".{e}"


class Settings(BaseModel):
    source: Path
    output: Optional[Path] = None
    root: Optional[Path] = None
    host: str = "127.0.0.1"
    port: int = Field(0, ge=0, le=65535)
    debounce_ms: int = Field(DEFAULT_DEBOUNCE_MS, ge=10, le=10_000)
    send_timeout: float = Field(2.0, gt=0)
    queue_size: int = Field(256, ge=1)
    client_queue_size: int = Field(16, ge=1)
    font_paths: List[Path] = Field(default_factory=list)
    ppi: Optional[float] = Field(None, gt=0)
    open_browser: bool = False
    typst: str = "typst"
    watch: bool = True
    extensions: List[str] = Field(default_factory=lambda: list(DEFAULT_EXTENSIONS))

    @field_validator("extensions")
    @classmethod
    def _check_extensions(cls, v: List[str]) -> List[str]:
        out = [_normalize_ext(e) for e in v if _normalize_ext(e)]
        if ".pdf" in out:
            raise ValueError(".pdf cannot be a watched extension")
        return out

    @property
    def source_path(self) -> Path:
        return self.source.expanduser().resolve()

    @property
    def output_path(self) -> Path:
        if self.output is not None:
            return self.output.expanduser().resolve()
        return self.source_path.with_suffix(".pdf")

    @property
    def root_path(self) -> Path:
        if self.root is not None:
            return self.root.expanduser().resolve()
        return self.source_path.parent

    @property
    def quiet_period(self) -> float:
        return self.debounce_ms / 1000.0

    @classmethod
    def from_env(cls, **overrides: Any) -> "Settings":
        """Build settings from environment variables, then apply non-None overrides."""
        env = os.environ
        data: Dict[str, Any] = {}
        if env.get("PREVIEW_SOURCE"):
            data["source"] = env["PREVIEW_SOURCE"]
        if env.get("PREVIEW_OUTPUT"):
            data["output"] = env["PREVIEW_OUTPUT"]
        if env.get("PREVIEW_ROOT"):
            data["root"] = env["PREVIEW_ROOT"]
        if env.get("HOST"):
            data["host"] = env["HOST"]
        if env.get("PORT"):
            data["port"] = env["PORT"]
        if env.get("PREVIEW_DEBOUNCE_MS"):
            data["debounce_ms"] = env["PREVIEW_DEBOUNCE_MS"]
        if env.get("PREVIEW_FONT_PATHS"):
            data["font_paths"] = [p for p in env["PREVIEW_FONT_PATHS"].split(os.pathsep) if p]
        if env.get("PREVIEW_PPI"):
            data["ppi"] = env["PREVIEW_PPI"]
        if env.get("TYPST"):
            data["typst"] = env["TYPST"]
        for k, v in overrides.items():
            if v is not None:
                data[k] = v
        return cls(**data)
