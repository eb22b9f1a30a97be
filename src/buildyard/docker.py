# docker.py
from __future__ import annotations

import abc
import logging
import subprocess
from pathlib import Path
from typing import Dict, List, Sequence
from urllib.parse import urlparse

from .errors import EndpointError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------
# Container endpoint capability
# ---------------------------------------------------------------------

class ContainerRuntime(abc.ABC):
    """
    What the executor needs from a container endpoint.

    Every method that talks to the endpoint raises EndpointError when the
    endpoint is unreachable or misbehaves.
    """

    @abc.abstractmethod
    def ping(self) -> None: ...

    @abc.abstractmethod
    def has_image(self, image: str) -> bool: ...

    @abc.abstractmethod
    def create(self, image: str, *, command: Sequence[str], env: Dict[str, str], name: str | None = None) -> str:
        """Create (but do not start) a container. Returns its id."""

    @abc.abstractmethod
    def copy_to(self, container_id: str, src: Path, dest: str) -> None: ...

    @abc.abstractmethod
    def start(self, container_id: str) -> None: ...

    @abc.abstractmethod
    def wait(self, container_id: str, timeout: float) -> int | None:
        """Exit code, or None if the container is still running after `timeout` seconds."""

    @abc.abstractmethod
    def logs(self, container_id: str) -> str:
        """Combined stdout/stderr."""

    @abc.abstractmethod
    def copy_from(self, container_id: str, src: str, dest: Path) -> bool:
        """Copy `src` out of the container into `dest`. False if `src` does not exist."""

    @abc.abstractmethod
    def stop(self, container_id: str) -> None: ...

    @abc.abstractmethod
    def remove(self, container_id: str) -> None: ...


# ---------------------------------------------------------------------
# Docker CLI implementation
# ---------------------------------------------------------------------

_UNREACHABLE_MARKERS = (
    "Cannot connect to the Docker daemon",
    "error during connect",
    "connection refused",
    "no such host",
    "i/o timeout",
)

_MISSING_PATH_MARKERS = (
    "Could not find the file",
    "No such container:path",
)


def docker_host(uri: str, endpoint_type: str) -> str:
    """
    Turn a configured endpoint uri into a DOCKER_HOST value.

      http://10.0.0.1:2375      -> tcp://10.0.0.1:2375
      /var/run/docker.sock      -> unix:///var/run/docker.sock
    """
    if endpoint_type == "socket":
        if uri.startswith("unix://"):
            return uri
        return f"unix://{uri}"

    parsed = urlparse(uri)
    if parsed.scheme in ("http", "https", "tcp") and parsed.netloc:
        return f"tcp://{parsed.netloc}"
    raise EndpointError(
        kind="invalid_endpoint_uri",
        message=f"Cannot use {uri!r} as a network endpoint",
        details={"endpoint_type": endpoint_type},
    )


class DockerCliRuntime(ContainerRuntime):
    """Talks to one docker daemon through the docker CLI (`docker --host ...`)."""

    def __init__(self, uri: str, endpoint_type: str, *, docker_bin: str = "docker", command_timeout: float = 120.0):
        self.host = docker_host(uri, endpoint_type)
        self.docker_bin = docker_bin
        self.command_timeout = command_timeout

    def __repr__(self) -> str:
        return f"DockerCliRuntime({self.host!r})"

    def _docker(
        self,
        args: List[str],
        *,
        timeout: float | None = None,
        check: bool = True,
        combined: bool = False,
        timeout_ok: bool = False,
    ) -> subprocess.CompletedProcess:
        """
        Run one docker command against this endpoint.

        A command that does not finish within the timeout counts as an
        unreachable endpoint, unless timeout_ok is set: then the
        TimeoutExpired is passed on to the caller. With combined=True
        stderr is merged into stdout.
        """
        cmd = [self.docker_bin, "--host", self.host, *args]
        timeout = timeout if timeout is not None else self.command_timeout
        try:
            proc = subprocess.run(
                cmd,
                shell=False,
                text=True,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT if combined else subprocess.PIPE,
                timeout=timeout,
            )
        except FileNotFoundError as e:
            raise EndpointError(
                kind="docker_unavailable",
                message="Docker is not available",
                details={"hint": "Install Docker and ensure the docker CLI is on PATH."},
            ) from e
        except subprocess.TimeoutExpired as e:
            if timeout_ok:
                raise
            raise EndpointError(
                kind="endpoint_unreachable",
                message=f"docker {args[0]} on {self.host} did not finish within {timeout:g}s",
                details={"timeout": timeout},
            ) from e

        if check and proc.returncode != 0:
            stderr = ((proc.stdout if combined else proc.stderr) or "").strip()
            kind = "endpoint_unreachable" if any(m.lower() in stderr.lower() for m in _UNREACHABLE_MARKERS) else "docker_command_failed"
            raise EndpointError(
                kind=kind,
                message=f"docker {args[0]} failed on {self.host}",
                details={"exit_code": proc.returncode, "stderr": stderr[-2000:]},
            )
        return proc

    def ping(self) -> None:
        self._docker(["version", "--format", "{{.Server.Version}}"], timeout=min(30.0, self.command_timeout))

    def has_image(self, image: str) -> bool:
        proc = self._docker(["image", "inspect", "--format", "{{.Id}}", image], check=False)
        if proc.returncode == 0:
            return True
        stderr = proc.stderr or ""
        if any(m.lower() in stderr.lower() for m in _UNREACHABLE_MARKERS):
            raise EndpointError(kind="endpoint_unreachable", message=f"{self.host} is unreachable", details={"stderr": stderr[-2000:]})
        return False

    def create(self, image: str, *, command: Sequence[str], env: Dict[str, str], name: str | None = None) -> str:
        args = ["create"]
        if name:
            args.extend(["--name", name])
        # only the filtered variables, never the host environment
        for key, value in sorted(env.items()):
            args.extend(["-e", f"{key}={value}"])
        args.append(image)
        args.extend(command)
        proc = self._docker(args)
        return proc.stdout.strip()

    def copy_to(self, container_id: str, src: Path, dest: str) -> None:
        self._docker(["cp", str(src), f"{container_id}:{dest}"])

    def start(self, container_id: str) -> None:
        self._docker(["start", container_id])

    def wait(self, container_id: str, timeout: float) -> int | None:
        try:
            proc = self._docker(["wait", container_id], timeout=timeout, timeout_ok=True)
        except subprocess.TimeoutExpired:
            return None
        return int(proc.stdout.strip().splitlines()[-1])

    def logs(self, container_id: str) -> str:
        # the container's stdout and stderr, interleaved
        proc = self._docker(["logs", container_id], combined=True)
        return proc.stdout or ""

    def copy_from(self, container_id: str, src: str, dest: Path) -> bool:
        proc = self._docker(["cp", f"{container_id}:{src}", str(dest)], check=False)
        if proc.returncode == 0:
            return True
        if any(m in (proc.stderr or "") for m in _MISSING_PATH_MARKERS):
            return False
        raise EndpointError(
            kind="docker_command_failed",
            message=f"docker cp from {container_id}:{src} failed",
            details={"stderr": (proc.stderr or "")[-2000:]},
        )

    def stop(self, container_id: str) -> None:
        self._docker(["stop", "--time", "10", container_id], check=False)

    def remove(self, container_id: str) -> None:
        self._docker(["rm", "--force", "--volumes", container_id], check=False)
