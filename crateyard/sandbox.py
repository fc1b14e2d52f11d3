"""Docker-based sandboxes in which commands are executed."""

from __future__ import annotations

import enum
import json
import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .cmd import Command, LineCallback, ProcessOutput
from .errors import (
    CommandError,
    ExecutionFailedError,
    InvalidDockerInspectOutputError,
    SandboxImageMissingError,
    SandboxImagePullError,
    SandboxOOMError,
    WorkspaceNotMountedError,
)

logger = logging.getLogger(__name__)

_ON_WINDOWS = sys.platform == "win32"


def _normalize_path(path: str | os.PathLike[str]) -> Path:
    return Path(os.path.abspath(os.fspath(path)))


def _format_cpus(limit: float) -> str:
    value = float(limit)
    if value.is_integer():
        return str(int(value))
    return repr(value)


@dataclass
class SandboxImage:
    """The Docker image used for sandboxing."""

    name: str

    @classmethod
    def local(cls, name: str) -> SandboxImage:
        """Use an image already present on this machine.

        Raises :class:`SandboxImageMissingError` if it is not available locally.
        """
        image = cls(name)
        logger.info("sandbox image is local, skipping pull")
        image._ensure_exists_locally()
        return image

    @classmethod
    def remote(cls, name: str) -> SandboxImage:
        """Pull an image from its registry.

        Raises :class:`SandboxImagePullError` if pulling fails. When the pulled
        image has a repository digest, the image is referred to by it.
        """
        image = cls(name)
        logger.info("pulling image %s from Docker Hub", name)
        try:
            Command(None, "docker").args(["pull", name]).run()
        except (CommandError, OSError) as err:
            raise SandboxImagePullError(err) from err
        name_with_hash = image._name_with_hash()
        if name_with_hash is not None:
            image.name = name_with_hash
            logger.info("pulled image %s", image.name)
        image._ensure_exists_locally()
        return image

    def _ensure_exists_locally(self) -> None:
        logger.info("checking the image %s is available locally", self.name)
        try:
            Command(None, "docker").args(["image", "inspect", self.name]).log_output(False).run()
        except (CommandError, OSError) as err:
            raise SandboxImageMissingError(err) from err

    def _name_with_hash(self) -> str | None:
        try:
            out = (
                Command(None, "docker")
                .args(["inspect", self.name, "--format", "{{index .RepoDigests 0}}"])
                .log_output(False)
                .run_capture()
            )
        except (CommandError, OSError):
            return None
        return out.stdout[0] if out.stdout else None


class MountKind(enum.Enum):
    """Whether a path is mounted in the sandbox with write permissions."""

    READ_WRITE = "rw"
    READ_ONLY = "ro"


@dataclass(frozen=True)
class MountConfig:
    """A host path mounted at a path inside the sandbox."""

    host_path: Path
    sandbox_path: str
    perm: MountKind

    def resolve_host_path(self, workspace: Any) -> Path:
        """Return the host path as the Docker daemon sees it.

        When running inside a container the path is rebased onto the source of
        the container mount that holds it.
        """
        container = workspace.current_container()
        if container is None:
            return _normalize_path(self.host_path)
        inside = _normalize_path(self.host_path)
        for mount in container.mounts:
            dest = _normalize_path(mount.destination)
            try:
                shared = inside.relative_to(dest)
            except ValueError:
                continue
            return Path(mount.source) / shared
        raise WorkspaceNotMountedError()

    def to_volume_arg(self, workspace: Any) -> str:
        """Render the mount as the value of Docker's ``-v`` option."""
        host = self.resolve_host_path(workspace)
        return f"{host}:{self.sandbox_path}:{self.perm.value},Z"

    def to_mount_arg(self, workspace: Any) -> str:
        """Render the mount as the value of Docker's ``--mount`` option."""
        host = self.resolve_host_path(workspace)
        options = ",readonly" if self.perm is MountKind.READ_ONLY else ""
        return f"type=bind,src={host},dst={self.sandbox_path}{options}"


class SandboxBuilder:
    """Configuration of a sandbox in which a :class:`Command` runs.

    Configuration methods modify the builder and return it; use :meth:`copy`
    to derive an independent builder.
    """

    def __init__(self) -> None:
        self._mounts: list[MountConfig] = []
        self._env: list[tuple[str, str]] = []
        self._memory_limit: int | None = None
        self._cpu_limit: float | None = None
        self._workdir: str | None = None
        self._user: str | None = None
        self._cmd: list[str] = []
        self._enable_networking = True

    def mount(
        self,
        host_path: str | os.PathLike[str],
        sandbox_path: str | os.PathLike[str],
        kind: MountKind,
    ) -> SandboxBuilder:
        """Mount ``host_path`` at ``sandbox_path``, read-only or writable."""
        self._mounts.append(MountConfig(Path(host_path), os.fspath(sandbox_path), kind))
        return self

    def memory_limit(self, limit: int | None) -> SandboxBuilder:
        """Limit the sandbox's memory to ``limit`` bytes; ``None`` removes the limit."""
        self._memory_limit = limit
        return self

    def cpu_limit(self, limit: float | None) -> SandboxBuilder:
        """Limit the sandbox to a fraction of CPU cores; ``None`` removes the limit."""
        self._cpu_limit = limit
        return self

    def enable_networking(self, enable: bool) -> SandboxBuilder:
        """Enable or disable network access inside the sandbox."""
        self._enable_networking = enable
        return self

    def env(self, key: str, value: str) -> SandboxBuilder:
        """Set an environment variable inside the sandbox."""
        self._env.append((str(key), str(value)))
        return self

    def cmd(self, cmd: list[str]) -> SandboxBuilder:
        """Set the command run inside the sandbox."""
        self._cmd = list(cmd)
        return self

    def workdir(self, workdir: str) -> SandboxBuilder:
        """Set the working directory inside the sandbox."""
        self._workdir = str(workdir)
        return self

    def user(self, user: int, group: int) -> SandboxBuilder:
        """Run the sandboxed command as ``user:group``."""
        self._user = f"{user}:{group}"
        return self

    def copy(self) -> SandboxBuilder:
        """Return an independent builder with the same configuration."""
        other = SandboxBuilder()
        other._mounts = list(self._mounts)
        other._env = list(self._env)
        other._memory_limit = self._memory_limit
        other._cpu_limit = self._cpu_limit
        other._workdir = self._workdir
        other._user = self._user
        other._cmd = list(self._cmd)
        other._enable_networking = self._enable_networking
        return other

    def create_args(self, workspace: Any) -> list[str]:
        """Return the arguments given to ``docker`` to create the container."""
        args = ["create"]
        for mount in self._mounts:
            # ``-v`` cannot mount paths holding a colon, as on Windows, but only it
            # accepts the Z flag that SELinux relabeling needs.
            if _ON_WINDOWS:
                args += ["--mount", mount.to_mount_arg(workspace)]
            else:
                args += ["-v", mount.to_volume_arg(workspace)]
        for key, value in self._env:
            args += ["-e", f"{key}={value}"]
        if self._workdir is not None:
            args += ["-w", self._workdir]
        if self._memory_limit is not None:
            args += ["-m", str(int(self._memory_limit))]
        if self._cpu_limit is not None:
            args += ["--cpus", _format_cpus(self._cpu_limit)]
        if self._user is not None:
            args += ["--user", self._user]
        if not self._enable_networking:
            args += ["--network", "none"]
        if _ON_WINDOWS:
            args.append("--isolation=process")
        args.append(workspace.sandbox_image().name)
        args.extend(self._cmd)
        return args

    def _create(self, workspace: Any) -> _Container:
        for mount in self._mounts:
            Path(mount.host_path).mkdir(parents=True, exist_ok=True)
        out = Command(workspace, "docker").args(self.create_args(workspace)).run_capture()
        if not out.stdout:
            raise CommandError("`docker create` did not print a container ID")
        return _Container(out.stdout[0], workspace)

    def run(
        self,
        workspace: Any,
        timeout: float | None,
        no_output_timeout: float | None,
        process_lines: LineCallback | None,
        log_output: bool,
        log_command: bool,
        capture: bool,
    ) -> ProcessOutput:
        """Create the container, run it and remove it afterwards."""
        container = self._create(workspace)
        try:
            return container.run(
                timeout, no_output_timeout, process_lines, log_output, log_command, capture
            )
        finally:
            try:
                container.delete()
            except (CommandError, OSError) as err:
                logger.error("failed to delete container %s", container.id)
                cause: BaseException | None = err
                while cause is not None:
                    logger.error("caused by: %s", cause)
                    cause = cause.__cause__


@dataclass
class _Container:
    id: str
    workspace: Any

    def __str__(self) -> str:
        return self.id

    def _oom_killed(self) -> bool:
        output = (
            Command(self.workspace, "docker")
            .args(["inspect", self.id])
            .log_output(False)
            .run_capture()
        )
        try:
            data = json.loads("\n".join(output.stdout))
        except json.JSONDecodeError as err:
            raise InvalidDockerInspectOutputError(err) from err
        if not isinstance(data, list) or len(data) != 1:
            raise InvalidDockerInspectOutputError("expected exactly one container")
        try:
            oom = data[0]["State"]["OOMKilled"]
        except (KeyError, TypeError) as err:
            raise InvalidDockerInspectOutputError(f"missing field {err}") from err
        if not isinstance(oom, bool):
            raise InvalidDockerInspectOutputError("OOMKilled is not a boolean")
        return oom

    def run(
        self,
        timeout: float | None,
        no_output_timeout: float | None,
        process_lines: LineCallback | None,
        log_output: bool,
        log_command: bool,
        capture: bool,
    ) -> ProcessOutput:
        cmd = (
            Command(self.workspace, "docker")
            .args(["start", "-a", self.id])
            .timeout(timeout)
            .log_output(log_output)
            .log_command(log_command)
            .no_output_timeout(no_output_timeout)
        )
        if process_lines is not None:
            cmd.process_lines(process_lines)

        result: ProcessOutput | None = None
        error: CommandError | None = None
        try:
            result = cmd.execute(capture)
        except CommandError as err:
            error = err

        if self._oom_killed():
            if error is None or isinstance(error, ExecutionFailedError):
                raise SandboxOOMError() from error
            raise error
        if error is not None:
            raise error
        assert result is not None
        return result

    def delete(self) -> None:
        Command(self.workspace, "docker").args(["rm", "-f", self.id]).run()


def docker_running(workspace: Any) -> bool:
    """Return whether the Docker daemon is running and reachable."""
    logger.info("checking if the docker daemon is running")
    try:
        Command(workspace, "docker").args(["info"]).log_output(False).run()
    except (CommandError, OSError):
        return False
    return True