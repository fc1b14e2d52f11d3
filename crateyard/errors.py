"""Errors raised while running commands and sandboxes."""

from __future__ import annotations

import os


class CommandError(Exception):
    """Base class of every error raised while executing a command."""


class NoOutputError(CommandError):
    """The command printed nothing for longer than its timeout and was killed."""

    def __init__(self, seconds: int) -> None:
        super().__init__(f"no output for {seconds} seconds")
        self.seconds = seconds


class CommandTimeoutError(CommandError):
    """The command ran for longer than its timeout and was killed."""

    def __init__(self, seconds: int) -> None:
        super().__init__(f"command timed out after {seconds} seconds")
        self.seconds = seconds


def _describe_status(returncode: int) -> str:
    if returncode < 0:
        return f"signal: {-returncode}"
    return f"exit status: {returncode}"


class ExecutionFailedError(CommandError):
    """The command exited unsuccessfully.

    ``returncode`` follows the subprocess convention: a negative value is the
    number of the signal that terminated the process.
    """

    def __init__(self, returncode: int) -> None:
        super().__init__(f"command failed: {_describe_status(returncode)}")
        self.returncode = returncode


class KillFailedError(CommandError):
    """Killing the process after a timeout failed."""

    def __init__(self, pid: int, errno: int | None = None) -> None:
        message = f"failed to kill the process with PID {pid}"
        if errno is not None:
            message += f": {os.strerror(errno)}"
        super().__init__(message)
        self.pid = pid
        self.errno = errno


class SandboxOOMError(CommandError):
    """The sandbox ran out of memory and was killed."""

    def __init__(self) -> None:
        super().__init__("container ran out of memory")


class SandboxImagePullError(CommandError):
    """Pulling the sandbox image from its registry failed."""

    def __init__(self, cause: BaseException) -> None:
        super().__init__(f"failed to pull the sandbox image from the registry: {cause}")
        self.cause = cause
        self.__cause__ = cause


class SandboxImageMissingError(CommandError):
    """The sandbox image is not present on the local system."""

    def __init__(self, cause: BaseException) -> None:
        super().__init__(f"sandbox image missing from the local system: {cause}")
        self.cause = cause
        self.__cause__ = cause


class WorkspaceNotMountedError(CommandError):
    """Running inside a container, the workspace is not mounted from the host."""

    def __init__(self) -> None:
        super().__init__("the workspace is not mounted from outside the container")


class InvalidDockerInspectOutputError(CommandError):
    """The output of ``docker inspect`` could not be understood."""

    def __init__(self, cause: BaseException | str) -> None:
        super().__init__(f"invalid output of `docker inspect`: {cause}")
        self.cause = cause
        if isinstance(cause, BaseException):
            self.__cause__ = cause