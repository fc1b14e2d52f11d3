"""Crates whose source is a git repository."""

from __future__ import annotations

import logging
import os
import shutil
from pathlib import Path
from typing import Any

from .cmd import Command
from .errors import CommandError
from .process_lines import ProcessLinesActions

logger = logging.getLogger(__name__)

_SAFE_BYTES = frozenset(
    b"abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789-_."
)

# The first empty helper clears any configured helpers; the second one refuses
# to answer, so git fails instead of prompting interactively and reports that
# the helper "told us to quit".
_GIT_NO_PROMPT_ARGS = [
    "-c",
    "credential.helper=",
    "-c",
    "credential.helper=!f() { echo quit=1; }; f",
]


def _escape_path(value: str) -> str:
    """Turn an arbitrary string into a single, filesystem-safe path component."""
    return "".join(
        chr(byte) if byte in _SAFE_BYTES else f"%{byte:02x}" for byte in value.encode("utf-8")
    )


class PrivateGitRepositoryError(Exception):
    """The git repository requires authentication to be fetched."""

    def __init__(self, url: str) -> None:
        super().__init__(f"the git repository {url} is private")
        self.url = url


class GitRepo:
    """A crate fetched by cloning a git repository."""

    def __init__(self, url: str) -> None:
        self.url = url

    def cached_path(self, workspace: Any) -> Path:
        """Where the bare clone of the repository is cached."""
        return Path(workspace.cache_dir()) / "git-repos" / _escape_path(self.url)

    def git_commit(self, workspace: Any) -> str | None:
        """Return the commit at HEAD of the cached clone, or ``None`` if unknown."""
        try:
            out = (
                Command(workspace, "git")
                .args(["rev-parse", "HEAD"])
                .cd(self.cached_path(workspace))
                .run_capture()
            )
        except (CommandError, OSError) as err:
            logger.warning("unable to capture sha for %s: %s", self.url, err)
            return None
        if out.stdout and out.stdout[0]:
            return out.stdout[0]
        logger.warning("bad output from `git rev-parse HEAD`")
        return None

    def fetch(self, workspace: Any) -> None:
        """Clone the repository into the cache, or update the cached clone."""
        private_repository = False

        def detect_private_repository(line: str, _actions: ProcessLinesActions) -> None:
            nonlocal private_repository
            if line.startswith("fatal: credential helper") and line.endswith("told us to quit"):
                private_repository = True

        path = self.cached_path(workspace)
        if (path / "HEAD").is_file():
            logger.info("updating cached repository %s", self.url)
            context = f"failed to update {self.url}"
            cmd = (
                Command(workspace, "git")
                .args(_GIT_NO_PROMPT_ARGS)
                .args(["-c", "remote.origin.fetch=refs/heads/*:refs/heads/*"])
                .args(["fetch", "origin", "--force", "--prune"])
                .cd(path)
            )
        else:
            logger.info("cloning repository %s", self.url)
            context = f"failed to clone {self.url}"
            path.parent.mkdir(parents=True, exist_ok=True)
            cmd = (
                Command(workspace, "git")
                .args(_GIT_NO_PROMPT_ARGS)
                .args(["clone", "--bare", self.url])
                .args([path])
            )

        try:
            cmd.process_lines(detect_private_repository).run()
        except (CommandError, OSError) as err:
            if private_repository:
                raise PrivateGitRepositoryError(self.url) from err
            raise CommandError(f"{context}: {err}") from err

    def purge_from_cache(self, workspace: Any) -> None:
        """Remove the cached clone, if any."""
        path = self.cached_path(workspace)
        if path.exists():
            shutil.rmtree(path)

    def copy_source_to(self, workspace: Any, dest: str | os.PathLike[str]) -> None:
        """Check out the cached clone into ``dest``."""
        try:
            Command(workspace, "git").args(["clone"]).args(
                [self.cached_path(workspace), dest]
            ).run()
        except (CommandError, OSError) as err:
            raise CommandError(f"failed to checkout {self.url}: {err}") from err

    def __str__(self) -> str:
        return f"git repo {self.url}"