"""Crates downloaded from crates.io or from an alternative registry."""

from __future__ import annotations

import contextlib
import json
import logging
import os
import shutil
import tarfile
import tempfile
import urllib.request
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Any

from .cmd import Command
from .errors import CommandError
from .git_repo import _escape_path

logger = logging.getLogger(__name__)

CRATES_ROOT = "https://static.crates.io/crates"


@dataclass
class AlternativeRegistry:
    """A registry other than crates.io, identified by the URL of its git index."""

    registry_index: str
    key: str | None = field(default=None, repr=False)

    def authenticate_with_ssh_key(self, key: str) -> None:
        """Use the given private SSH key when cloning the index."""
        self.key = key

    @property
    def index(self) -> str:
        return self.registry_index

    def index_folder(self) -> str:
        """The directory name under which the index and sources are cached."""
        return _escape_path(self.registry_index)


def download_url(template: str, name: str, version: str) -> str:
    """Build a download URL from the ``dl`` template of a registry's ``config.json``."""
    if "{crate}" in template or "{version}" in template:
        return template.replace("{crate}", name).replace("{version}", version)
    return f"{template}/{name}/{version}/download"


def _clone_index(workspace: Any, registry: AlternativeRegistry, index_path: Path) -> None:
    url = registry.index
    index_path.parent.mkdir(parents=True, exist_ok=True)
    cmd = Command(workspace, "git").args(["clone", url, index_path])
    with contextlib.ExitStack() as stack:
        if registry.key is not None:
            key_dir = Path(stack.enter_context(tempfile.TemporaryDirectory()))
            key_path = key_dir / "identity"
            fd = os.open(key_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
            with os.fdopen(fd, "w") as key_file:
                key_file.write(registry.key if registry.key.endswith("\n") else registry.key + "\n")
            cmd.env("GIT_SSH_COMMAND", f'ssh -i "{key_path}" -o IdentitiesOnly=yes')
        try:
            cmd.run()
        except (CommandError, OSError) as err:
            raise CommandError(f"unable to update_index at {url}: {err}") from err
    logger.info("cloned registry index")


class RegistryCrate:
    """A crate published on a registry; ``registry`` is ``None`` for crates.io."""

    def __init__(self, registry: AlternativeRegistry | None, name: str, version: str) -> None:
        self.registry = registry
        self.name = name
        self.version = version

    def _cache_folder(self) -> str:
        if self.registry is None:
            return "cratesio-sources"
        return f"{self.registry.index_folder()}-sources"

    def _registry_name(self) -> str:
        return "crates.io" if self.registry is None else self.registry.index

    def cache_path(self, workspace: Any) -> Path:
        """Where the downloaded ``.crate`` archive is cached."""
        return (
            Path(workspace.cache_dir())
            / self._cache_folder()
            / self.name
            / f"{self.name}-{self.version}.crate"
        )

    def fetch_url(self, workspace: Any) -> str:
        """The URL the crate archive is downloaded from.

        For an alternative registry the index is cloned first if it is not cached.
        """
        if self.registry is None:
            return f"{CRATES_ROOT}/{self.name}/{self.name}-{self.version}.crate"

        index_path = Path(workspace.cache_dir()) / "registry-index" / self.registry.index_folder()
        if not index_path.exists():
            _clone_index(workspace, self.registry, index_path)
        config = (index_path / "config.json").read_text(encoding="utf-8")
        try:
            template = json.loads(config)["dl"]
            if not isinstance(template, str):
                raise TypeError("dl is not a string")
        except (json.JSONDecodeError, KeyError, TypeError) as err:
            raise ValueError("registry has invalid config.json") from err
        return download_url(template, self.name, self.version)

    def fetch(self, workspace: Any) -> None:
        """Download the crate archive into the cache unless it is already there."""
        local = self.cache_path(workspace)
        if local.exists():
            logger.info("crate %s %s is already in cache", self.name, self.version)
            return
        logger.info("fetching crate %s %s...", self.name, self.version)
        local.parent.mkdir(parents=True, exist_ok=True)
        url = self.fetch_url(workspace)
        partial = local.with_name(local.name + ".part")
        try:
            with urllib.request.urlopen(url) as response, partial.open("wb") as out:
                shutil.copyfileobj(response, out)
            partial.replace(local)
        except BaseException:
            partial.unlink(missing_ok=True)
            raise

    def purge_from_cache(self, workspace: Any) -> None:
        """Remove the cached archive, if any."""
        path = self.cache_path(workspace)
        if path.exists():
            path.unlink()

    def copy_source_to(self, workspace: Any, dest: str | os.PathLike[str]) -> None:
        """Extract the cached archive into ``dest``, dropping its top-level directory."""
        dest_path = Path(dest)
        with self.cache_path(workspace).open("rb") as cached:
            logger.info(
                "extracting crate %s %s into %s", self.name, self.version, dest_path
            )
            try:
                with tarfile.open(fileobj=cached, mode="r:gz") as archive:
                    unpack_without_first_dir(archive, dest_path)
            except (OSError, EOFError, tarfile.TarError, ValueError) as err:
                shutil.rmtree(dest_path, ignore_errors=True)
                raise OSError(
                    f"unable to download {self.name} version {self.version}"
                ) from err

    def __str__(self) -> str:
        return f"{self._registry_name()} crate {self.name} {self.version}"


def unpack_without_first_dir(archive: tarfile.TarFile, path: str | os.PathLike[str]) -> None:
    """Extract every member of ``archive`` under ``path`` without its first path component."""
    root = Path(path)
    for member in archive:
        parts = PurePosixPath(member.name).parts[1:]
        if ".." in parts:
            raise ValueError(f"refusing to unpack {member.name!r} outside the destination")
        full_path = root.joinpath(*parts)
        full_path.parent.mkdir(parents=True, exist_ok=True)
        _unpack_member(archive, member, full_path, root)


def _unpack_member(
    archive: tarfile.TarFile, member: tarfile.TarInfo, full_path: Path, root: Path
) -> None:
    if member.isdir():
        full_path.mkdir(parents=True, exist_ok=True)
    elif member.issym():
        if full_path.is_symlink() or full_path.exists():
            full_path.unlink()
        os.symlink(member.linkname, full_path)
    elif member.islnk():
        link_parts = PurePosixPath(member.linkname).parts[1:]
        if ".." in link_parts:
            raise ValueError(f"refusing to link {member.name!r} outside the destination")
        shutil.copyfile(root.joinpath(*link_parts), full_path)
    elif member.isfile():
        source = archive.extractfile(member)
        if source is None:
            raise ValueError(f"cannot read {member.name!r} from the archive")
        with source, full_path.open("wb") as out:
            shutil.copyfileobj(source, out)
        mode = member.mode & 0o777
        if mode:
            os.chmod(full_path, mode)
        os.utime(full_path, (member.mtime, member.mtime))