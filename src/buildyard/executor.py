# executor.py
from __future__ import annotations

import logging
import shutil
import tempfile
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import Dict, List, Mapping, Optional, Sequence

from .config import Configuration
from .endpoints import Endpoint, EndpointPool
from .errors import ConfigError, EndpointError, ImageNotAllowed, PhaseFailed, PhaseTimeout, RunAborted
from .logparse import ParsedLog
from .model import PackageSpec, PhaseExecution, PhaseStatus
from .script import render_script, script_context

logger = logging.getLogger(__name__)

WAIT_SLICE = 1.0


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class PhaseRequest:
    """Everything the executor needs to run one phase of one job."""
    spec: PackageSpec
    phase: str
    job_uuid: str
    extra_env: Dict[str, str] = field(default_factory=dict)
    # published artifacts of direct dependencies (relative name -> file),
    # copied below the input dir
    inputs: Dict[str, Path] = field(default_factory=dict)
    dependencies: List[str] = field(default_factory=list)
    # when set, the container's output dir is copied here after a successful run
    collect_to: Optional[Path] = None


class ContainerExecutor:
    """
    Runs one phase of one job inside a fresh container on an acquired endpoint.

    Pre-run checks (image, environment, script) raise before any container
    exists. Once a container is created it is always stopped and removed.
    """

    def __init__(self, config: Configuration, pool: EndpointPool):
        self.config = config
        self.pool = pool

    # ---- pre-run checks ----

    def resolve_image(self, spec: PackageSpec) -> str:
        image = self.config.docker.resolve_image(spec.image)
        if image is None:
            raise ImageNotAllowed(
                kind="image_not_allowed",
                message=f"Image {spec.image} for {spec.id} is not in the configured images",
                details={"available": self.config.docker.image_names()},
            )

        short = {i.name: i.short_name for i in self.config.docker.images}[image]
        if spec.allowed_images is not None and not ({image, short} & set(spec.allowed_images)):
            raise ImageNotAllowed(
                kind="image_not_allowed",
                message=f"Package {spec.id} is only allowed on: {', '.join(spec.allowed_images)}",
            )
        if spec.denied_images is not None and ({image, short} & set(spec.denied_images)):
            raise ImageNotAllowed(
                kind="image_denied",
                message=f"Package {spec.id} is not allowed to be built on {image}",
            )
        return image

    def verify_image_present(self, image: str, endpoint: Endpoint) -> None:
        if not self.config.docker.verify_images_present:
            return
        if not self.pool.has_image(endpoint, image):
            raise ImageNotAllowed(
                kind="image_not_present",
                message=f"Image {image} is not present on endpoint {endpoint.name}",
                details={"endpoint": endpoint.name},
            )

    def build_environment(self, spec: PackageSpec, extra_env: Mapping[str, str] | None = None) -> Dict[str, str]:
        """
        The requested variables (package environment + run-level extras),
        intersected with the global allow-list when check_env_names is set.
        """
        requested: Dict[str, str] = dict(spec.environment)
        requested.update(extra_env or {})

        containers = self.config.containers
        if not containers.check_env_names:
            return requested

        allowed = set(containers.allowed_env)
        rejected = sorted(k for k in requested if k not in allowed)
        if rejected and containers.reject_disallowed_env:
            raise ConfigError(
                kind="env_not_allowed",
                message=f"Package {spec.id} requests environment variables that are not allowed: {rejected}",
                details={"allowed_env": sorted(allowed)},
            )
        for name in rejected:
            logger.warning("Dropping environment variable %s for %s: not in allowed_env", name, spec.id)
        return {k: v for k, v in requested.items() if k in allowed}

    def render(self, spec: PackageSpec, phase: str, image: str, env: Mapping[str, str], dependencies: Sequence[str] = ()) -> str:
        ctx = script_context(spec, phase=phase, image=image, env=env, dependencies=dependencies)
        body = render_script(
            spec.script,
            ctx,
            strict=self.config.strict_script_interpolation,
            owner=f"{spec.id} ({phase})",
        )
        if not body.startswith("#!"):
            body = f"{self.config.shebang}\n{body}"
        return body

    # ---- execution ----

    def run_phase(self, request: PhaseRequest, endpoint: Endpoint, cancel: threading.Event | None = None) -> PhaseExecution:
        """
        Run one phase. Returns a PhaseExecution for every outcome of the
        container itself (success, non-zero exit, timeout, abort).

        Raises ImageNotAllowed / ConfigError / TemplateError before a
        container exists, EndpointError if the endpoint misbehaves.
        """
        spec = request.spec
        image = self.resolve_image(spec)
        self.verify_image_present(image, endpoint)
        env = self.build_environment(spec, request.extra_env)
        script = self.render(spec, request.phase, image, env, request.dependencies)

        runtime = endpoint.runtime
        containers = self.config.containers
        started_at = now_utc()
        container_id: str | None = None
        exit_code: int | None = None
        status = PhaseStatus.FAILED
        error_message: str | None = None
        output = ""

        with tempfile.TemporaryDirectory(prefix="buildyard-") as tmp:
            tmp_p = Path(tmp)
            script_file = tmp_p / "script"
            script_file.write_text(script, encoding="utf-8")
            script_file.chmod(0o755)

            try:
                container_id = runtime.create(
                    image,
                    command=[containers.script_path],
                    env=env,
                    name=f"buildyard-{request.job_uuid[:8]}-{request.phase}",
                )
                logger.debug("[%s] %s: container %s on %s", spec.id, request.phase, container_id, endpoint.name)
                runtime.copy_to(container_id, script_file, containers.script_path)
                if request.inputs:
                    staged = self._stage_inputs(tmp_p, request.inputs, containers.input_dir)
                    runtime.copy_to(container_id, staged, str(PurePosixPath(containers.input_dir).parent))

                runtime.start(container_id)
                exit_code, status, error_message = self._wait(container_id, endpoint, cancel)

                output = runtime.logs(container_id)
                if status is PhaseStatus.SUCCEEDED:
                    script_error = ParsedLog.build_from(output).error_message()
                    if script_error is not None:
                        status, error_message = PhaseStatus.FAILED, script_error
                if status is PhaseStatus.SUCCEEDED and request.collect_to is not None:
                    if not runtime.copy_from(container_id, containers.output_dir, request.collect_to):
                        logger.info("[%s] no output directory %s in container", spec.id, containers.output_dir)
            finally:
                if container_id is not None:
                    self._teardown(container_id, endpoint, running=exit_code is None)

        finished_at = now_utc()
        execution = PhaseExecution(
            phase=request.phase,
            endpoint=endpoint.name,
            status=status,
            exit_code=exit_code,
            output=output,
            started_at=started_at,
            finished_at=finished_at,
            error_message=error_message,
        )
        logger.info(
            "[%s] phase %s on %s: %s (exit=%s, %.1fs)",
            spec.id, request.phase, endpoint.name, status.value, exit_code, execution.duration,
        )
        return execution

    def _wait(self, container_id: str, endpoint: Endpoint, cancel: threading.Event | None):
        timeout = self.config.phase_timeout
        deadline = time.monotonic() + timeout if timeout is not None else None
        while True:
            if cancel is not None and cancel.is_set():
                return None, PhaseStatus.ABORTED, "run aborted"
            slice_ = WAIT_SLICE
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None, PhaseStatus.TIMEOUT, f"phase exceeded {timeout}s"
                slice_ = min(slice_, remaining)
            code = endpoint.runtime.wait(container_id, timeout=slice_)
            if code is not None:
                if code == 0:
                    return code, PhaseStatus.SUCCEEDED, None
                return code, PhaseStatus.FAILED, f"exit status {code}"

    def _teardown(self, container_id: str, endpoint: Endpoint, *, running: bool) -> None:
        try:
            if running:
                endpoint.runtime.stop(container_id)
            endpoint.runtime.remove(container_id)
        except EndpointError as e:
            logger.warning("Could not remove container %s on %s: %s", container_id, endpoint.name, e.message)

    @staticmethod
    def _stage_inputs(tmp: Path, inputs: Mapping[str, Path], input_dir: str) -> Path:
        # docker cp of a directory creates it (by basename) inside the destination
        d = tmp / PurePosixPath(input_dir).name
        d.mkdir()
        for name, src in inputs.items():
            dest = d / name
            dest.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(src, dest)
        return d


def raise_for_status(execution: PhaseExecution, spec: PackageSpec) -> None:
    """Turn a non-successful PhaseExecution into the matching error."""
    if execution.status is PhaseStatus.SUCCEEDED:
        return
    details = {"phase": execution.phase, "endpoint": execution.endpoint, "exit_code": execution.exit_code}
    if execution.status is PhaseStatus.TIMEOUT:
        raise PhaseTimeout(kind="phase_timeout", message=f"{spec.id}: phase {execution.phase} timed out", details=details)
    if execution.status is PhaseStatus.ABORTED:
        raise RunAborted(kind="aborted", message=f"{spec.id}: phase {execution.phase} aborted", details=details)
    raise PhaseFailed(
        kind="phase_failed",
        message=f"{spec.id}: phase {execution.phase} failed ({execution.error_message})",
        details=details,
    )
