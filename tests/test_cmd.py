import os
import sys
from pathlib import Path

import pytest

from crateyard.cmd import (
    CARGO_BIN_DIR,
    CARGO_HOME,
    EXE_SUFFIX,
    RUSTUP_HOME,
    WORK_DIR,
    Binary,
    BinaryKind,
    Command,
    ProcessOutput,
    Runnable,
    exe_suffix,
)
from crateyard.errors import (
    CommandTimeoutError,
    ExecutionFailedError,
    NoOutputError,
)

PY = sys.executable


class FakeWorkspace:
    def __init__(self, root, timeout=None, no_output_timeout=None):
        self.root = Path(root)
        self.timeout = timeout
        self.no_output = no_output_timeout

    def default_command_timeout(self):
        return self.timeout

    def default_command_no_output_timeout(self):
        return self.no_output

    def cargo_home(self):
        return self.root / "cargo-home"

    def rustup_home(self):
        return self.root / "rustup-home"


class FakeSandbox:
    def __init__(self):
        self.mounts = []
        self.envs = []
        self.workdir_value = None
        self.command = None
        self.user_value = None
        self.run_args = None

    def copy(self):
        return self

    def mount(self, host_path, sandbox_path, kind):
        self.mounts.append((Path(host_path), sandbox_path, kind))
        return self

    def env(self, key, value):
        self.envs.append((key, value))
        return self

    def workdir(self, workdir):
        self.workdir_value = workdir
        return self

    def cmd(self, cmd):
        self.command = list(cmd)
        return self

    def user(self, user, group):
        self.user_value = (user, group)
        return self

    def run(self, workspace, timeout, no_output_timeout, process_lines,
            log_output, log_command, capture):
        self.run_args = {
            "workspace": workspace,
            "timeout": timeout,
            "no_output_timeout": no_output_timeout,
            "capture": capture,
            "log_output": log_output,
        }
        return ProcessOutput(["sandboxed"], [])


def py(code):
    return Command(None, PY).args(["-c", code])


def test_exe_suffix_appends_platform_suffix():
    assert EXE_SUFFIX in ("", ".exe")
    assert exe_suffix("cargo") == "cargo" + EXE_SUFFIX


def test_run_capture_collects_stdout_and_stderr():
    out = py("import sys; print('a'); print('b'); print('e', file=sys.stderr)").run_capture()
    assert out.stdout == ["a", "b"]
    assert out.stderr == ["e"]


def test_run_without_capture_still_calls_callback():
    seen = []
    result = py("print('x'); print('y')").process_lines(
        lambda line, actions: seen.append(line)
    ).run()
    assert result is None
    assert seen == ["x", "y"]


def test_process_lines_replace_and_remove():
    def handler(line, actions):
        if line == "drop":
            actions.remove_line()
        elif line == "split":
            actions.replace_with_lines(["one", "two"])

    out = py("print('keep'); print('drop'); print('split')").process_lines(handler).run_capture()
    assert out.stdout == ["keep", "one", "two"]


def test_nonzero_exit_raises_execution_failed():
    with pytest.raises(ExecutionFailedError) as info:
        py("import sys; sys.exit(3)").run()
    assert info.value.returncode == 3


def test_env_is_passed_to_process():
    out = py("import os; print(os.environ['CY_TEST'])").env("CY_TEST", "value").run_capture()
    assert out.stdout == ["value"]


def test_cd_changes_working_directory(tmp_path):
    out = py("import os; print(os.getcwd())").cd(tmp_path).run_capture()
    assert Path(out.stdout[0]).resolve() == tmp_path.resolve()


def test_timeout_kills_process():
    with pytest.raises(CommandTimeoutError):
        py("import time; time.sleep(10)").timeout(0.5).run()


def test_no_output_timeout_kills_silent_process():
    with pytest.raises(NoOutputError):
        py("import time; time.sleep(10)").timeout(20).no_output_timeout(0.5).run()


def test_workspace_default_timeout_is_used(tmp_path):
    ws = FakeWorkspace(tmp_path, timeout=0.5)
    with pytest.raises(CommandTimeoutError):
        Command(ws, PY).args(["-c", "import time; time.sleep(10)"]).run()


def test_missing_binary_raises_oserror():
    with pytest.raises(OSError):
        Command(None, os.path.join("definitely", "missing-binary-xyz")).run()


def test_runnable_prepares_command():
    class Hello(Runnable):
        def name(self):
            return Binary(BinaryKind.GLOBAL, PY)

        def prepare_command(self, cmd):
            return cmd.args(["-c", "print('hello')"])

    assert Command(None, Hello()).run_capture().stdout == ["hello"]


def test_managed_binary_requires_workspace():
    with pytest.raises(ValueError):
        Command(None, Binary.managed("cargo")).run()


def test_sandboxed_requires_workspace():
    with pytest.raises(ValueError):
        Command(None, "echo", FakeSandbox()).run()


def test_sandboxed_command_configures_builder(tmp_path):
    ws = FakeWorkspace(tmp_path, timeout=12, no_output_timeout=5)
    sandbox = FakeSandbox()
    out = (
        Command(ws, "echo", sandbox)
        .args(["hi"])
        .env("A", "B")
        .cd(tmp_path)
        .run_capture()
    )
    assert out.stdout == ["sandboxed"]
    assert sandbox.command == ["echo", "hi"]
    assert sandbox.workdir_value == str(WORK_DIR)
    assert sandbox.mounts[0][0] == tmp_path
    assert sandbox.mounts[0][1] == WORK_DIR
    assert sandbox.mounts[1][0] == ws.cargo_home()
    assert sandbox.mounts[1][1] == CARGO_HOME
    assert sandbox.mounts[2][1] == RUSTUP_HOME
    keys = [key for key, _ in sandbox.envs]
    assert keys.index("SOURCE_DIR") < keys.index("A") < keys.index("CARGO_HOME")
    assert ("CARGO_HOME", str(CARGO_HOME)) in sandbox.envs
    assert sandbox.run_args["capture"] is True
    assert sandbox.run_args["timeout"] == 12
    assert sandbox.run_args["no_output_timeout"] == 5
    assert sandbox.run_args["workspace"] is ws


def test_sandboxed_managed_binary_uses_container_bin_dir(tmp_path):
    ws = FakeWorkspace(tmp_path)
    sandbox = FakeSandbox()
    Command(ws, Binary.managed("cargo"), sandbox).args(["build"]).run()
    assert sandbox.command == [str(CARGO_BIN_DIR / exe_suffix("cargo")), "build"]
    assert sandbox.run_args["capture"] is False