"""Crates whose source lives in a directory on the local filesystem."""

from __future__ import annotations

import errno
import logging
import os
import shutil
import stat
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


class LocalCrate:
    """A crate loaded from a local directory."""

    def __init__(self, path: str | os.PathLike[str]) -> None:
        self.path = Path(path)

    def fetch(self, workspace: Any) -> Path:
        """Return the crate's directory; a local crate needs no download."""
        return self.path

    def purge_from_cache(self, workspace: Any) -> bool:
        """Remove this crate's cached copies; return whether anything was removed.

        A local crate is read in place and has no cached copies, so this returns False.
        """
        removed = False
        for cached in self._cached_paths(workspace):
            if cached.exists():
                shutil.rmtree(cached)
                removed = True
        return removed

    def _cached_paths(self, workspace: Any) -> tuple[Path, ...]:
        return ()

    def copy_source_to(self, workspace: Any, dest: str | os.PathLike[str]) -> None:
        """Copy the crate's directory to ``dest``, leaving out a top-level ``target``."""
        logger.info("copying local crate from %s to %s", self.path, dest)
        copy_dir(self.path, dest)

    def __str__(self) -> str:
        return f"local crate {self.path}"


def copy_dir(src: str | os.PathLike[str], dest: str | os.PathLike[str]) -> None:
    """Copy ``src`` into ``dest`` recursively, following symbolic links.

    A ``target`` directory directly inside ``src`` is not copied. Broken or
    looping links raise :class:`OSError` naming the offending path.
    """
    src_path = Path(os.path.abspath(os.fspath(src)))
    dest_path = Path(os.path.abspath(os.fspath(dest)))
    root = os.stat(src_path)
    dest_path.mkdir(parents=True, exist_ok=True)
    _copy_tree(src_path, dest_path, 1, frozenset({(root.st_dev, root.st_ino)}))


def _copy_tree(
    src_dir: Path, dest_dir: Path, depth: int, ancestors: frozenset[tuple[int, int]]
) -> None:
    with os.scandir(src_dir) as scanner:
        entries = sorted(scanner, key=lambda entry: entry.name)
    for entry in entries:
        path = Path(entry.path)
        info = os.stat(path)
        if stat.S_ISDIR(info.st_mode):
            if entry.name == "target" and depth == 1:
                logger.info("ignoring top-level target directory %s", entry.name)
                continue
            key = (info.st_dev, info.st_ino)
            if key in ancestors:
                raise OSError(errno.ELOOP, "filesystem loop detected", str(path))
            target = dest_dir / entry.name
            target.mkdir(parents=True, exist_ok=True)
            _copy_tree(path, target, depth + 1, ancestors | {key})
        else:
            shutil.copy(path, dest_dir / entry.name)