# crateyard

crateyard fetches Rust crates and runs commands against their sources.
Commands run either directly on the host or inside a Docker container.
The container can have memory, CPU and network limits. Commands can have
timeouts, and a callback can process their output line by line as it
arrives.

The package has no third-party dependencies. Docker must be installed to
use sandboxed commands, and `git` is needed for git crates and for the
indexes of alternative registries.

## The workspace object

Most calls take a `workspace` argument. The package does not define a
workspace class. You pass your own object, and it must provide these
methods:

| Method | Used for |
| --- | --- |
| `cache_dir()` | Directory where crate archives, git clones and registry indexes are cached |
| `cargo_home()`, `rustup_home()` | Toolchain homes for managed binaries, mounted read-only into sandboxes |
| `default_command_timeout()`, `default_command_no_output_timeout()` | Default timeouts in seconds, or `None` |
| `current_container()` | A `crateyard.inside_docker.CurrentContainer` when running inside Docker, otherwise `None` |
| `sandbox_image()` | The `crateyard.sandbox.SandboxImage` used for sandboxes |

`Command(None, ...)` also works, without a workspace. It is limited to
unsandboxed global binaries and has no default timeouts.

## Crates

`crateyard.crate.Crate` represents one crate. It can come from any of
these sources:

```python
from crateyard.crate import Crate
from crateyard.registry import AlternativeRegistry

serde = Crate.crates_io("serde", "1.0.0")
repo = Crate.git("https://example.com/some/repo.git")
local = Crate.local("path/to/crate")

registry = AlternativeRegistry("https://example.com/index.git")
registry.authenticate_with_ssh_key(ssh_private_key)
private = Crate.registry(registry, "mycrate", "0.1.0")
```

A `Crate` has these methods:

- `fetch(workspace)` downloads the source into `workspace.cache_dir()`:
  - **Registry crates:** the `.crate` archive is downloaded. For an alternative registry, its index is cloned first with `git`, and the download URL is taken from the `dl` field of the index's `config.json`. `crateyard.registry.download_url` builds that URL.
  - **Git crates:** a bare clone is made or updated.
  - **Local crates:** there is nothing to fetch.
- `copy_source_to(workspace, dest)` first removes `dest` if it exists, then writes the source into it:
  - **Registry archives** are extracted without their top-level directory.
  - **Git crates** are cloned from the cached copy.
  - **Local directories** are copied, following symbolic links. A top-level `target` directory is skipped.
- `purge_from_cache(workspace)` removes the cached copy.
- `git_commit(workspace)` returns the commit at `HEAD` for git crates. For all other crates, and on failure, it returns `None`.

If a git repository needs credentials, crateyard raises
`crateyard.git_repo.PrivateGitRepositoryError` instead of waiting at a
password prompt.

## Commands

`crateyard.cmd.Command` builds a process to run. Each configuration
method changes the command and returns it, so calls can be chained.

```python
from crateyard.cmd import Command

output = (
    Command(workspace, "cargo", None)
    .args(["build", "--all"])
    .env("RUSTFLAGS", "-Dwarnings")
    .cd("path/to/source")
    .timeout(600)
    .no_output_timeout(120)
    .run_capture()
)
print(output.stdout, output.stderr)
```

There are three ways to run a command:

- `run()` returns nothing.
- `run_capture()` returns a `ProcessOutput` with `stdout` and `stderr` lists of lines.
- `execute(capture)` runs the command and collects the output only when `capture` is true.

By default the command line and every output line are logged through
`logging`. `log_command(False)` and `log_output(False)` turn this off.

You can attach a callback to see each line as it arrives:

```python
def hide_warnings(line, actions):
    if line.startswith("warning:"):
        actions.remove_line()

Command(workspace, "cargo", None).args(["check"]).process_lines(hide_warnings).run()
```

`process_lines(callback)` calls the callback for each stdout and stderr
line. The callback can change what is logged and captured for that line
through `crateyard.process_lines.ProcessLinesActions`:

- `remove_line()` drops the line.
- `replace_with_lines(lines)` substitutes other lines.

The binary can be given in two ways:

- **A plain name.** The binary is found on `PATH`.
- **`crateyard.cmd.Binary.managed(name)`.** The binary is run from `cargo_home()/bin`, with `CARGO_HOME` and `RUSTUP_HOME` set to the workspace's homes.

You can also subclass `crateyard.cmd.Runnable` and implement `name()`.

### Errors

Failures raise subclasses of `crateyard.errors.CommandError`:

| Error | Raised when |
| --- | --- |
| `ExecutionFailedError` | The command exits with a non-zero status (`returncode`) |
| `CommandTimeoutError` | The command runs past its timeout and is killed |
| `NoOutputError` | The command is silent past its no-output timeout and is killed |
| `KillFailedError` | Killing the process after a timeout fails |
| `SandboxOOMError` | The container runs out of memory |
| `SandboxImagePullError` | Pulling the sandbox image fails |
| `SandboxImageMissingError` | The sandbox image is not available locally |
| `WorkspaceNotMountedError` | A mounted path is not inside a mount of the current container |
| `InvalidDockerInspectOutputError` | The output of `docker inspect` cannot be read |

## Sandboxes

```python
from crateyard.cmd import Command
from crateyard.sandbox import MountKind, SandboxBuilder, SandboxImage, docker_running

image = SandboxImage.local("my-build-image")   # or SandboxImage.remote("name:tag")
sandbox = (
    SandboxBuilder()
    .memory_limit(1024 * 1024 * 1024)
    .cpu_limit(2.0)
    .enable_networking(False)
    .mount("host/dir", "/opt/dir", MountKind.READ_ONLY)
)
Command(workspace, "cargo", sandbox).args(["test"]).run()
```

A sandboxed command runs in a new container, and the container is
removed afterwards. Inside the container:

- The command's directory is mounted read-only at `crateyard.cmd.WORK_DIR` and used as the working directory.
- The workspace's cargo and rustup homes are mounted read-only.
- On systems that provide user IDs, the process runs as the current user.

To inspect the `docker create` arguments without running anything, call
`SandboxBuilder.create_args(workspace)`.

`docker_running(workspace)` reports whether the Docker daemon is
reachable.

`crateyard.inside_docker.CurrentContainer.detect(workspace)` finds the
container the program itself runs in, if there is one.
`probe_container_id` does the actual search: it writes a random probe
file and checks which running container can read it. When
`workspace.current_container()` returns such a container, mount sources
are remapped to host paths through that container's mount table.

## What it does not do

crateyard does not provide:

- A workspace implementation.
- Toolchain installation.
- Management of build directories.
- A command-line program.

It is a library for fetching crate sources and running commands. You
supply the workspace object described above.

## Tests

```
pip install -e ".[test]"
pytest
```