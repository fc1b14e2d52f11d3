"""Detecting whether the current process runs inside a Docker container."""

from __future__ import annotations

import base64
import json
import logging
import secrets
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .cmd import Command
from .errors import CommandError, InvalidDockerInspectOutputError

logger = logging.getLogger(__name__)

PROBE_FILENAME = "crateyard-probe"


@dataclass(frozen=True)
class Mount:
    """A mount of the current container: a host ``source`` at ``destination``."""

    source: str
    destination: str


@dataclass
class CurrentContainer:
    """The container the current process is running in."""

    mounts: list[Mount] = field(default_factory=list)

    @classmethod
    def from_inspect_output(cls, text: str) -> CurrentContainer:
        """Build from the JSON printed by ``docker inspect`` for one container."""
        try:
            data = json.loads(text)
        except json.JSONDecodeError as err:
            raise InvalidDockerInspectOutputError(err) from err
        if not isinstance(data, list) or len(data) != 1:
            raise InvalidDockerInspectOutputError("invalid output returned by `docker inspect`")
        try:
            mounts = [Mount(str(m["Source"]), str(m["Destination"])) for m in data[0]["Mounts"]]
        except (KeyError, TypeError) as err:
            raise InvalidDockerInspectOutputError(f"missing field {err}") from err
        return cls(mounts)

    @classmethod
    def detect(cls, workspace: Any) -> CurrentContainer | None:
        """Return the current container, or ``None`` when not running in one."""
        container_id = probe_container_id(workspace)
        if container_id is None:
            return None
        logger.info("inspecting the current container")
        out = (
            Command(workspace, "docker")
            .args(["inspect", container_id])
            .log_output(False)
            .log_command(False)
            .run_capture()
        )
        return cls.from_inspect_output("\n".join(out.stdout))


def probe_container_id(workspace: Any) -> str | None:
    """Find the ID of the container this process runs in, if any.

    A file holding a random string is written to the temporary directory, then
    every running container is asked to print that file: the one that prints
    the same string is the current container.
    """
    logger.info("detecting the ID of the container where crateyard is running")

    probe_path = Path(tempfile.gettempdir()) / PROBE_FILENAME
    probe_content = base64.b64encode(secrets.token_bytes(64)).decode("ascii")
    probe_path.write_text(probe_content)

    out = (
        Command(workspace, "docker")
        .args(["ps", "--format", "{{.ID}}", "--no-trunc"])
        .log_output(False)
        .log_command(False)
        .run_capture()
    )
    for container_id in out.stdout:
        logger.info("probing container id %s", container_id)
        try:
            probed = (
                Command(workspace, "docker")
                .args(["exec", container_id, "cat", str(probe_path)])
                .log_output(False)
                .log_command(False)
                .run_capture()
            )
        except (CommandError, OSError):
            continue
        if probed.stdout == [probe_content]:
            logger.info("probe successful, this is container ID %s", container_id)
            return container_id

    logger.info("probe unsuccessful, this is not running inside a container")
    return None