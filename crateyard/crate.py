"""A crate that can be fetched, cached and copied into a build directory."""

from __future__ import annotations

import logging
import os
import shutil
from pathlib import Path
from typing import Any, Union

from .git_repo import GitRepo
from .local import LocalCrate
from .registry import AlternativeRegistry, RegistryCrate

logger = logging.getLogger(__name__)

_Source = Union[RegistryCrate, GitRepo, LocalCrate]


class Crate:
    """A Rust crate from a registry, a git repository or a local directory."""

    def __init__(self, source: _Source) -> None:
        self._source = source

    @classmethod
    def registry(cls, registry: AlternativeRegistry, name: str, version: str) -> Crate:
        """A crate published on an alternative registry."""
        return cls(RegistryCrate(registry, name, version))

    @classmethod
    def crates_io(cls, name: str, version: str) -> Crate:
        """A crate published on crates.io."""
        return cls(RegistryCrate(None, name, version))

    @classmethod
    def git(cls, url: str) -> Crate:
        """A crate in the git repository cloned from ``url``."""
        return cls(GitRepo(url))

    @classmethod
    def local(cls, path: str | os.PathLike[str]) -> Crate:
        """A crate in a local directory."""
        return cls(LocalCrate(path))

    def fetch(self, workspace: Any) -> None:
        """Fetch the crate's source into the workspace cache; may use the network."""
        self._source.fetch(workspace)

    def purge_from_cache(self, workspace: Any) -> None:
        """Remove the cached copy of the crate, if there is one."""
        self._source.purge_from_cache(workspace)

    def git_commit(self, workspace: Any) -> str | None:
        """The crate's git commit; only known for git crates, ``None`` otherwise."""
        if isinstance(self._source, GitRepo):
            return self._source.git_commit(workspace)
        return None

    def copy_source_to(self, workspace: Any, dest: str | os.PathLike[str]) -> None:
        """Copy the crate's source to ``dest``, replacing whatever is there."""
        dest_path = Path(dest)
        if dest_path.exists():
            logger.info("crate source directory %s already exists, cleaning it up", dest_path)
            shutil.rmtree(dest_path)
        self._source.copy_source_to(workspace, dest_path)

    def __str__(self) -> str:
        return str(self._source)