from __future__ import annotations

import gzip
import json
import logging
import os
import shutil
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterable, Iterator, Optional, TextIO, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def ensure_outdir(path: str | Path) -> Path:
    p = Path(path)
    p.mkdir(parents=True, exist_ok=True)
    return p


def which(cmd: str) -> Optional[str]:
    return shutil.which(cmd)


def open_textmaybe_gzip(path: str | Path, mode: str = "rt") -> TextIO:
    p = str(path)
    if p.endswith(".gz"):
        return gzip.open(p, mode)  # type: ignore[return-value]
    return open(p, mode)


def write_json(path: str | Path, obj: Any) -> None:
    with open(path, "wt", encoding="utf-8") as f:
        json.dump(obj, f, indent=2, sort_keys=True, default=str)


def artifact_ready(path: str | Path) -> bool:
    """True if ``path`` exists and is non-empty (a completed artifact)."""
    p = Path(path)
    return p.is_file() and p.stat().st_size > 0


@contextmanager
def atomic_output(path: str | Path, mode: str = "wt") -> Iterator[TextIO]:
    """Write to ``<path>.tmp`` and rename over ``path`` only on success.

    A failed write leaves no partial artifact behind under the final name.
    """
    if not mode.startswith("w"):
        raise ValueError(f"atomic_output only supports write modes, got {mode!r}")
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    # keep the suffix so .gz outputs are still compressed
    tmp = path.with_name(path.stem + ".tmp" + path.suffix)
    fh = open_textmaybe_gzip(tmp, mode)
    try:
        yield fh
    except BaseException:
        fh.close()
        tmp.unlink(missing_ok=True)
        raise
    fh.close()
    os.replace(tmp, path)


def remove_paths(paths: Iterable[str | Path]) -> int:
    """Remove files and directories that exist; return how many were removed."""
    removed = 0
    for p in map(Path, paths):
        if p.is_dir():
            shutil.rmtree(p)
            removed += 1
        elif p.exists():
            p.unlink()
            removed += 1
    return removed


def chunked(iterable: Iterable[T], n: int) -> Iterable[list[T]]:
    chunk: list[T] = []
    for item in iterable:
        chunk.append(item)
        if len(chunk) >= n:
            yield chunk
            chunk = []
    if chunk:
        yield chunk
