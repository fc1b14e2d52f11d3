"""Building and running external commands, optionally inside a sandbox."""

from __future__ import annotations

import abc
import enum
import logging
import os
import queue
import subprocess
import sys
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from pathlib import Path, PurePath, PurePosixPath, PureWindowsPath
from typing import Any

from .errors import (
    CommandError,
    CommandTimeoutError,
    ExecutionFailedError,
    KillFailedError,
    NoOutputError,
)
from .process_lines import LineState, ProcessLinesActions

logger = logging.getLogger(__name__)

EXE_SUFFIX = ".exe" if sys.platform == "win32" else ""

if sys.platform == "win32":
    ROOT_DIR: PurePath = PureWindowsPath(r"C:\crateyard")
else:
    ROOT_DIR = PurePosixPath("/opt/crateyard")

WORK_DIR = ROOT_DIR / "workdir"
TARGET_DIR = ROOT_DIR / "target"
CARGO_HOME = ROOT_DIR / "cargo-home"
RUSTUP_HOME = ROOT_DIR / "rustup-home"
CARGO_BIN_DIR = CARGO_HOME / "bin"

# Used when timeouts are disabled: a very long, but finite, limit.
_NO_TIMEOUT = 7 * 24 * 60 * 60.0

LineCallback = Callable[[str, ProcessLinesActions], Any]


def exe_suffix(name: str | os.PathLike[str]) -> str:
    """Append the platform's executable suffix to ``name``."""
    return os.fspath(name) + EXE_SUFFIX


class BinaryKind(enum.Enum):
    """Where a binary lives and how its environment is prepared."""

    GLOBAL = "global"
    """Available in ``$PATH``; its environment is left untouched."""
    MANAGED = "managed"
    """Installed in the workspace's cargo home, run with the workspace's toolchain homes."""


@dataclass(frozen=True)
class Binary:
    """Name and kind of a binary executed by a :class:`Command`."""

    kind: BinaryKind
    path: str

    @classmethod
    def global_binary(cls, path: str | os.PathLike[str]) -> Binary:
        return cls(BinaryKind.GLOBAL, os.fspath(path))

    @classmethod
    def managed(cls, path: str | os.PathLike[str]) -> Binary:
        return cls(BinaryKind.MANAGED, os.fspath(path))


class Runnable(abc.ABC):
    """Something a :class:`Command` can execute."""

    @abc.abstractmethod
    def name(self) -> Binary:
        """The binary to execute."""

    def prepare_command(self, cmd: Command) -> Command:
        """Adjust a freshly created command with this binary's default environment and arguments.

        The command is configured in place and returned.
        """
        for key, value in self._default_env():
            cmd.env(key, value)
        return cmd.args(self._default_args())

    def _default_args(self) -> Iterable[str]:
        return ()

    def _default_env(self) -> Iterable[tuple[str, str]]:
        return ()


class _FixedBinary(Runnable):
    def __init__(self, binary: Binary) -> None:
        self._binary = binary

    def name(self) -> Binary:
        return self._binary


def _as_runnable(binary: Runnable | Binary | str | os.PathLike[str]) -> Runnable:
    if isinstance(binary, Runnable):
        return binary
    if isinstance(binary, Binary):
        return _FixedBinary(binary)
    return _FixedBinary(Binary.global_binary(binary))


@dataclass
class ProcessOutput:
    """Lines a process printed, as returned by :meth:`Command.run_capture`."""

    stdout: list[str] = field(default_factory=list)
    stderr: list[str] = field(default_factory=list)


def _normalize_path(path: str | os.PathLike[str]) -> Path:
    return Path(os.path.abspath(os.fspath(path)))


def _current_user() -> tuple[int, int] | None:
    if hasattr(os, "getuid") and hasattr(os, "getgid"):
        return os.getuid(), os.getgid()
    return None


class Command:
    """Builder for running a system command with timeouts, live output handling and logging.

    Configuration methods modify the command and return it, so calls can be chained.
    """

    def __init__(
        self,
        workspace: Any,
        binary: Runnable | Binary | str | os.PathLike[str],
        sandbox: Any = None,
    ) -> None:
        runnable = _as_runnable(binary)
        self._workspace = workspace
        self._sandbox = sandbox
        self._binary = runnable.name()
        self._args: list[str] = []
        self._env: list[tuple[str, str]] = []
        self._process_lines: LineCallback | None = None
        self._cd: Path | None = None
        if workspace is not None:
            self._timeout = workspace.default_command_timeout()
            self._no_output_timeout = workspace.default_command_no_output_timeout()
        else:
            self._timeout = None
            self._no_output_timeout = None
        self._log_output = True
        self._log_command = True
        runnable.prepare_command(self)

    def args(self, args: Iterable[str | os.PathLike[str]]) -> Command:
        """Append command-line arguments."""
        self._args.extend(os.fspath(arg) for arg in args)
        return self

    def env(self, key: str, value: str | os.PathLike[str]) -> Command:
        """Add an environment variable."""
        self._env.append((key, os.fspath(value)))
        return self

    def cd(self, path: str | os.PathLike[str]) -> Command:
        """Run the command in ``path``."""
        self._cd = Path(path)
        return self

    def timeout(self, timeout: float | None) -> Command:
        """Kill the command if it runs longer than ``timeout`` seconds; ``None`` disables it."""
        self._timeout = timeout
        return self

    def no_output_timeout(self, timeout: float | None) -> Command:
        """Kill the command if it prints nothing for ``timeout`` seconds; ``None`` disables it."""
        self._no_output_timeout = timeout
        return self

    def process_lines(self, callback: LineCallback | None) -> Command:
        """Call ``callback(line, actions)`` for every line printed to stdout or stderr."""
        self._process_lines = callback
        return self

    def log_output(self, enabled: bool) -> Command:
        """Enable or disable logging every output line."""
        self._log_output = enabled
        return self

    def log_command(self, enabled: bool) -> Command:
        """Enable or disable logging the command before it runs."""
        self._log_command = enabled
        return self

    def run(self) -> None:
        """Run the command, raising :class:`CommandError` if it fails."""
        self.execute(False)

    def run_capture(self) -> ProcessOutput:
        """Run the command and return its output, raising :class:`CommandError` if it fails."""
        return self.execute(True)

    def execute(self, capture: bool) -> ProcessOutput:
        """Run the command; output is collected only when ``capture`` is true."""
        if self._sandbox is not None:
            return self._execute_sandboxed(capture)
        return self._execute_local(capture)

    def _execute_sandboxed(self, capture: bool) -> ProcessOutput:
        from .sandbox import MountKind

        workspace = self._workspace
        if workspace is None:
            raise ValueError("sandboxed builds without a workspace are not supported")

        if self._binary.kind is BinaryKind.GLOBAL:
            binary = self._binary.path
        else:
            binary = str(CARGO_BIN_DIR / exe_suffix(self._binary.path))
        cmd = [binary, *self._args]
        source_dir = self._cd if self._cd is not None else Path(".")

        builder = self._sandbox.copy()
        builder = (
            builder.mount(source_dir, WORK_DIR, MountKind.READ_ONLY)
            .env("SOURCE_DIR", str(WORK_DIR))
            .workdir(str(WORK_DIR))
            .cmd(cmd)
        )
        user = _current_user()
        if user is not None:
            builder = builder.user(*user)
        for key, value in self._env:
            builder = builder.env(key, value)
        builder = (
            builder.mount(Path(workspace.cargo_home()), CARGO_HOME, MountKind.READ_ONLY)
            .mount(Path(workspace.rustup_home()), RUSTUP_HOME, MountKind.READ_ONLY)
            .env("CARGO_HOME", str(CARGO_HOME))
            .env("RUSTUP_HOME", str(RUSTUP_HOME))
        )
        return builder.run(
            workspace,
            self._timeout,
            self._no_output_timeout,
            self._process_lines,
            self._log_output,
            self._log_command,
            capture,
        )

    def _execute_local(self, capture: bool) -> ProcessOutput:
        extra_env: dict[str, str] = {}
        if self._binary.kind is BinaryKind.GLOBAL:
            binary = self._binary.path
        else:
            workspace = self._workspace
            if workspace is None:
                raise ValueError("calling managed binaries without a workspace is not supported")
            binary = str(
                _normalize_path(Path(workspace.cargo_home()) / "bin" / exe_suffix(self._binary.path))
            )
            extra_env["CARGO_HOME"] = str(_normalize_path(workspace.cargo_home()))
            extra_env["RUSTUP_HOME"] = str(_normalize_path(workspace.rustup_home()))
        extra_env.update(self._env)

        argv = [binary, *self._args]
        if self._log_command:
            rendered = " ".join(
                [f'{key}="{value}"' for key, value in extra_env.items()]
                + [f'"{arg}"' for arg in argv]
            )
            logger.info("running `%s`", rendered)

        env = {**os.environ, **extra_env} if extra_env else None
        try:
            proc = subprocess.Popen(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                cwd=self._cd,
                env=env,
            )
            returncode, stdout, stderr = _communicate(
                proc,
                self._process_lines,
                capture,
                self._timeout,
                self._no_output_timeout,
                self._log_output,
            )
        except (CommandError, OSError) as err:
            logger.error("error running command: %s", err)
            raise

        if returncode != 0:
            raise ExecutionFailedError(returncode)
        return ProcessOutput(stdout, stderr)


_EOF = object()


def _pump(stream: Any, kind: str, sink: queue.Queue) -> None:
    try:
        for raw in iter(stream.readline, b""):
            sink.put((kind, raw))
    except Exception as err:  # delivered to the reading thread
        sink.put((kind, err))
    finally:
        sink.put((kind, _EOF))


def _kill(proc: subprocess.Popen) -> None:
    try:
        proc.kill()
    except OSError as err:
        raise KillFailedError(proc.pid, err.errno) from err
    proc.wait()


def _decode_line(raw: bytes) -> str:
    if raw.endswith(b"\n"):
        raw = raw[:-1]
        if raw.endswith(b"\r"):
            raw = raw[:-1]
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError as err:
        raise CommandError("stream did not contain valid UTF-8") from err


def _apply_actions(actions: ProcessLinesActions, line: str) -> list[str]:
    state, lines = actions.take_lines()
    if state is LineState.REMOVED:
        return []
    if state is LineState.REPLACED:
        return lines
    return [line]


def _communicate(
    proc: subprocess.Popen,
    process_lines: LineCallback | None,
    capture: bool,
    timeout: float | None,
    no_output_timeout: float | None,
    log_output: bool,
) -> tuple[int, list[str], list[str]]:
    total = timeout if timeout is not None else _NO_TIMEOUT
    silence = no_output_timeout if no_output_timeout is not None else total

    lines_queue: queue.Queue = queue.Queue()
    for kind, stream in (("stdout", proc.stdout), ("stderr", proc.stderr)):
        threading.Thread(target=_pump, args=(stream, kind, lines_queue), daemon=True).start()

    start = time.monotonic()
    deadline = start + total
    actions = ProcessLinesActions()
    captured: dict[str, list[str]] = {"stdout": [], "stderr": []}
    open_streams = 2

    try:
        while open_streams:
            remaining = deadline - time.monotonic()
            try:
                kind, item = lines_queue.get(timeout=max(0.0, min(silence, remaining)))
            except queue.Empty:
                _kill(proc)
                if silence < remaining:
                    raise NoOutputError(int(silence)) from None
                raise CommandTimeoutError(int(total)) from None

            if item is _EOF:
                open_streams -= 1
                continue
            if isinstance(item, BaseException):
                raise item
            # A process in a tight output loop never trips the silence limit.
            if time.monotonic() - start > total:
                _kill(proc)
                raise CommandTimeoutError(int(total))

            line = _decode_line(item)
            if process_lines is not None:
                process_lines(line, actions)
            lines = _apply_actions(actions, line)
            if log_output:
                for output_line in lines:
                    logger.info("[%s] %s", kind, output_line)
            if capture:
                captured[kind].extend(lines)

        try:
            returncode = proc.wait(timeout=max(0.0, deadline - time.monotonic()))
        except subprocess.TimeoutExpired:
            _kill(proc)
            raise CommandTimeoutError(int(total)) from None
    except BaseException:
        if proc.poll() is None:
            proc.kill()
            proc.wait()
        raise

    return returncode, captured["stdout"], captured["stderr"]