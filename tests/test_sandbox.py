import json
import os
import sys
from pathlib import Path

import pytest

from crateyard import sandbox
from crateyard.errors import (
    ExecutionFailedError,
    SandboxImageMissingError,
    SandboxImagePullError,
    SandboxOOMError,
    WorkspaceNotMountedError,
)
from crateyard.inside_docker import CurrentContainer, Mount
from crateyard.sandbox import (
    MountConfig,
    MountKind,
    SandboxBuilder,
    SandboxImage,
    docker_running,
)

FAKE_DOCKER = """\
import json, os, sys
args = sys.argv[1:]
with open(os.environ["FAKE_DOCKER_LOG"], "a") as log:
    log.write(json.dumps(args) + "\\n")
cmd = args[0]
def code(name):
    return int(os.environ.get(name, "0"))
if cmd == "create":
    print("container123")
elif cmd == "start":
    print("hello from sandbox")
    sys.exit(code("FAKE_DOCKER_START_EXIT"))
elif cmd == "inspect":
    if "--format" in args:
        print("repo@sha256:abc")
    else:
        print(json.dumps([{"State": {"OOMKilled": os.environ.get("FAKE_DOCKER_OOM") == "1"}}]))
elif cmd == "image":
    sys.exit(code("FAKE_DOCKER_IMAGE_EXIT"))
elif cmd == "pull":
    sys.exit(code("FAKE_DOCKER_PULL_EXIT"))
elif cmd == "info":
    sys.exit(code("FAKE_DOCKER_INFO_EXIT"))
"""


class FakeWorkspace:
    def __init__(self, container=None, image="img"):
        self._container = container
        self._image = SandboxImage(image)

    def default_command_timeout(self):
        return None

    def default_command_no_output_timeout(self):
        return None

    def current_container(self):
        return self._container

    def sandbox_image(self):
        return self._image


@pytest.fixture
def fake_docker(tmp_path, monkeypatch):
    bindir = tmp_path / "bin"
    bindir.mkdir()
    script = bindir / "docker"
    script.write_text(f"#!{sys.executable}\n" + FAKE_DOCKER)
    script.chmod(0o755)
    log = tmp_path / "docker.log"
    monkeypatch.setenv("PATH", str(bindir) + os.pathsep + os.environ.get("PATH", ""))
    monkeypatch.setenv("FAKE_DOCKER_LOG", str(log))

    def calls():
        if not log.exists():
            return []
        return [json.loads(line) for line in log.read_text().splitlines()]

    return calls


@pytest.fixture
def linux_style(monkeypatch):
    monkeypatch.setattr(sandbox, "_ON_WINDOWS", False)


def test_volume_arg_read_only():
    mount = MountConfig(Path("/a"), "/b", MountKind.READ_ONLY)
    assert mount.to_volume_arg(FakeWorkspace()) == "/a:/b:ro,Z"


def test_volume_arg_read_write():
    mount = MountConfig(Path("/a"), "/b", MountKind.READ_WRITE)
    assert mount.to_volume_arg(FakeWorkspace()) == "/a:/b:rw,Z"


def test_mount_arg():
    ws = FakeWorkspace()
    ro = MountConfig(Path("/a"), "/b", MountKind.READ_ONLY)
    rw = MountConfig(Path("/a"), "/b", MountKind.READ_WRITE)
    assert ro.to_mount_arg(ws) == "type=bind,src=/a,dst=/b,readonly"
    assert rw.to_mount_arg(ws) == "type=bind,src=/a,dst=/b"


def test_host_path_rebased_inside_container():
    container = CurrentContainer([Mount("/other", "/elsewhere"), Mount("/host/data", "/work")])
    mount = MountConfig(Path("/work/builds/x"), "/b", MountKind.READ_ONLY)
    assert mount.resolve_host_path(FakeWorkspace(container)) == Path("/host/data/builds/x")


def test_host_path_not_mounted_inside_container():
    container = CurrentContainer([Mount("/host/data", "/work")])
    mount = MountConfig(Path("/somewhere/else"), "/b", MountKind.READ_ONLY)
    with pytest.raises(WorkspaceNotMountedError):
        mount.resolve_host_path(FakeWorkspace(container))


def test_host_path_is_made_absolute(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    mount = MountConfig(Path("rel"), "/b", MountKind.READ_ONLY)
    assert mount.resolve_host_path(FakeWorkspace()) == tmp_path / "rel"


def test_default_create_args(linux_style):
    assert SandboxBuilder().create_args(FakeWorkspace()) == ["create", "img"]


def test_full_create_args(linux_style):
    builder = (
        SandboxBuilder()
        .mount(Path("/a"), Path("/b"), MountKind.READ_WRITE)
        .env("KEY", "value")
        .workdir("/w")
        .memory_limit(1024)
        .cpu_limit(2.0)
        .user(1000, 100)
        .enable_networking(False)
        .cmd(["cargo", "build"])
    )
    assert builder.create_args(FakeWorkspace()) == [
        "create",
        "-v", "/a:/b:rw,Z",
        "-e", "KEY=value",
        "-w", "/w",
        "-m", "1024",
        "--cpus", "2",
        "--user", "1000:100",
        "--network", "none",
        "img",
        "cargo", "build",
    ]


def test_fractional_cpu_limit(linux_style):
    args = SandboxBuilder().cpu_limit(0.5).create_args(FakeWorkspace())
    assert args[args.index("--cpus") + 1] == "0.5"


def test_windows_style_args(monkeypatch):
    monkeypatch.setattr(sandbox, "_ON_WINDOWS", True)
    builder = SandboxBuilder().mount(Path("/a"), "/b", MountKind.READ_ONLY)
    args = builder.create_args(FakeWorkspace())
    assert args[1:3] == ["--mount", "type=bind,src=/a,dst=/b,readonly"]
    assert args[-2:] == ["--isolation=process", "img"]


def test_copy_is_independent(linux_style):
    original = SandboxBuilder().env("A", "1")
    derived = original.copy().env("B", "2").enable_networking(False)
    ws = FakeWorkspace()
    assert original.create_args(ws) == ["create", "-e", "A=1", "img"]
    assert derived.create_args(ws) == ["create", "-e", "A=1", "-e", "B=2", "--network", "none", "img"]


def test_docker_running(fake_docker):
    assert docker_running(FakeWorkspace()) is True
    assert ["info"] in fake_docker()


def test_docker_not_running(fake_docker, monkeypatch):
    monkeypatch.setenv("FAKE_DOCKER_INFO_EXIT", "1")
    assert docker_running(FakeWorkspace()) is False


def test_docker_missing(tmp_path, monkeypatch):
    empty = tmp_path / "empty"
    empty.mkdir()
    monkeypatch.setenv("PATH", str(empty))
    assert docker_running(FakeWorkspace()) is False


def test_local_image(fake_docker):
    image = SandboxImage.local("myimage")
    assert image.name == "myimage"
    assert ["image", "inspect", "myimage"] in fake_docker()


def test_local_image_missing(fake_docker, monkeypatch):
    monkeypatch.setenv("FAKE_DOCKER_IMAGE_EXIT", "1")
    with pytest.raises(SandboxImageMissingError) as info:
        SandboxImage.local("myimage")
    assert isinstance(info.value.cause, ExecutionFailedError)


def test_remote_image_uses_digest(fake_docker):
    image = SandboxImage.remote("myimage")
    assert image.name == "repo@sha256:abc"
    calls = fake_docker()
    assert calls[0] == ["pull", "myimage"]
    assert calls[-1] == ["image", "inspect", "repo@sha256:abc"]


def test_remote_image_pull_failure(fake_docker, monkeypatch):
    monkeypatch.setenv("FAKE_DOCKER_PULL_EXIT", "1")
    with pytest.raises(SandboxImagePullError):
        SandboxImage.remote("myimage")


def test_run_captures_and_removes_container(fake_docker, tmp_path, linux_style):
    host = tmp_path / "mounted"
    builder = SandboxBuilder().mount(host, "/inside", MountKind.READ_WRITE).cmd(["true"])
    output = builder.run(FakeWorkspace(), None, None, None, False, False, True)
    assert output.stdout == ["hello from sandbox"]
    assert host.is_dir()
    calls = fake_docker()
    assert [call[0] for call in calls] == ["create", "start", "inspect", "rm"]
    assert calls[1] == ["start", "-a", "container123"]
    assert calls[3] == ["rm", "-f", "container123"]


def test_run_process_lines(fake_docker, linux_style):
    seen = []

    def callback(line, actions):
        seen.append(line)
        actions.replace_with_lines(["a", "b"])

    output = SandboxBuilder().run(FakeWorkspace(), None, None, callback, False, False, True)
    assert seen == ["hello from sandbox"]
    assert output.stdout == ["a", "b"]


def test_run_failure(fake_docker, monkeypatch, linux_style):
    monkeypatch.setenv("FAKE_DOCKER_START_EXIT", "1")
    with pytest.raises(ExecutionFailedError) as info:
        SandboxBuilder().run(FakeWorkspace(), None, None, None, False, False, False)
    assert info.value.returncode == 1
    assert fake_docker()[-1][0] == "rm"


def test_run_out_of_memory(fake_docker, monkeypatch, linux_style):
    monkeypatch.setenv("FAKE_DOCKER_START_EXIT", "137")
    monkeypatch.setenv("FAKE_DOCKER_OOM", "1")
    with pytest.raises(SandboxOOMError):
        SandboxBuilder().run(FakeWorkspace(), None, None, None, False, False, False)
    assert fake_docker()[-1][0] == "rm"