# scheduler.py
from __future__ import annotations

import logging
import queue
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Set, Union

from .artifacts import ArtifactPublisher, StagingStore, input_hash
from .buildlog import BuildLogRepository
from .catalog import PackageCatalog
from .config import Configuration
from .dag import BuildGraph, build_graph
from .endpoints import EndpointPool, RuntimeFactory, docker_cli_factory
from .errors import BuildError, ConfigError, EndpointError, LogRepositoryError, RunAborted, error_kind, error_message
from .executor import ContainerExecutor, PhaseRequest, now_utc, raise_for_status
from .git_facts import head_sha
from .lint import lint_graph
from .model import Artifact, BuildJob, JobReport, JobState, PhaseExecution, RunOutcome, RunState, RunSummary
from .sources import SourceCache

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.2


# ----------------------------------------------------------------------
# Worker -> coordinator messages
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class JobStarted:
    index: int
    endpoint: str


@dataclass(frozen=True)
class PhaseFinished:
    index: int
    execution: PhaseExecution


@dataclass(frozen=True)
class EndpointLost:
    index: int
    endpoint: str
    reason: str


@dataclass(frozen=True)
class JobFinished:
    index: int
    state: JobState
    artifacts: List[Artifact] = field(default_factory=list)
    error_kind: Optional[str] = None
    error_message: Optional[str] = None


Message = Union[JobStarted, PhaseFinished, EndpointLost, JobFinished]


@dataclass(frozen=True)
class _WorkItem:
    """Immutable copy of what a worker needs; workers never touch BuildJob."""
    index: int
    request: PhaseRequest


class Scheduler:
    """
    Drives one run of a BuildGraph to completion.

    The thread calling run() is the coordinator and the only mutator of job
    state and of the build log. Worker threads acquire an endpoint slot,
    run every phase of one job on it and report back through a queue.
    """

    def __init__(
        self,
        config: Configuration,
        graph: BuildGraph,
        pool: EndpointPool,
        executor: ContainerExecutor,
        publisher: ArtifactPublisher,
        repository: BuildLogRepository | None = None,
        *,
        staging: StagingStore | None = None,
        submit_uuid: str | None = None,
        extra_env: Mapping[str, str] | None = None,
        use_cache: bool = True,
        repo_hash: str | None = None,
        probe_endpoints: bool = True,
        verify_sources: bool = True,
        lint: bool = True,
        write_log_files: bool = False,
    ):
        self.config = config
        self.graph = graph
        self.pool = pool
        self.executor = executor
        self.publisher = publisher
        self.repository = repository
        self.submit_uuid = submit_uuid or str(uuid.uuid4())
        self.staging = staging or StagingStore.for_submit(config, self.submit_uuid)
        self.extra_env = dict(extra_env or {})
        self.use_cache = use_cache
        self.repo_hash = repo_hash
        self.probe_endpoints = probe_endpoints
        self.verify_sources = verify_sources
        self.lint = lint
        self.write_log_files = write_log_files
        self.sources = SourceCache.from_config(config)

        self.state = RunState.INITIALIZED
        self.warnings: List[str] = []
        self._cancel = threading.Event()
        self._messages: "queue.Queue[Message]" = queue.Queue()

    # ---- control ----

    def abort(self) -> None:
        """Stop dispatching and tear down in-flight containers. Safe from any thread."""
        if not self._cancel.is_set():
            logger.warning("Abort requested for submit %s", self.submit_uuid)
        self._cancel.set()
        self.pool.wake()

    @property
    def aborted(self) -> bool:
        return self._cancel.is_set()

    # ---- best-effort build log ----

    def _mirror(self, fn: Callable, *args, **kwargs) -> None:
        if self.repository is None:
            return
        try:
            fn(*args, **kwargs)
        except LogRepositoryError as e:
            msg = f"build log: {e.message}"
            logger.warning("Could not write to the build log: %s", e.message)
            self.warnings.append(msg)

    def _transition(self, job: BuildJob, state: JobState) -> None:
        job.state = state
        logger.info("[%s] %s", job.id, state.value)
        if self.repository is not None:
            self._mirror(self.repository.record_job_transition, job)

    # ---- pre-flight ----

    def preflight(self) -> None:
        """
        Checks that fail the whole run before anything is dispatched.
        Raises ConfigError.
        """
        if self.config.containers.reject_disallowed_env:
            for job in self.graph.nodes:
                self.executor.build_environment(job.spec, self.extra_env)

        if self.verify_sources:
            self.sources.verify_all(job.spec for job in self.graph.nodes)
        else:
            logger.warning("No hash verification will be performed")

        if self.lint and self.config.script_linter:
            lint_graph(self.graph, self.executor, self.config.script_linter, self.extra_env)
        elif self.lint:
            logger.info("No script linter configured, scripts are not linted")

    # ---- run ----

    def run(self) -> RunSummary:
        if self.state is not RunState.INITIALIZED:
            raise RuntimeError("A Scheduler can only run once")

        self.preflight()

        started_at = now_utc()
        self.state = RunState.RUNNING
        logger.info("Submit %s: %d job(s)", self.submit_uuid, len(self.graph))

        if self.repository is not None:
            self._mirror(
                self.repository.record_submit,
                self.submit_uuid,
                targets=[str(self.graph.nodes[i].id) for i in self.graph.targets],
                images=sorted({j.spec.image for j in self.graph.nodes}),
                repo_hash=self.repo_hash,
                submitted_at=started_at,
            )
            self._mirror(self.repository.record_jobs, self.submit_uuid, self.graph.nodes)

        if self.probe_endpoints:
            reachable = self.pool.probe()
            for e in self.pool:
                if not e.available:
                    self.warnings.append(f"endpoint {e.name} unreachable: {e.unavailable_reason}")
            logger.debug("Reachable endpoints: %s", reachable)

        self._coordinate()

        outcome = RunOutcome.SUCCESS
        if self.aborted:
            outcome = RunOutcome.ABORTED
            for job in self.graph.nodes:
                if not job.state.terminal:
                    job.finished_at = now_utc()
                    self._transition(job, JobState.ABORTED)
        elif not all(j.state is JobState.SUCCEEDED for j in self.graph.nodes):
            outcome = RunOutcome.PARTIAL_FAILURE

        finished_at = now_utc()
        self.state = RunState.COMPLETED
        if self.repository is not None:
            self._mirror(self.repository.finish_submit, self.submit_uuid, outcome.value, finished_at)

        logger.info("Submit %s finished: %s", self.submit_uuid, outcome.value)
        return RunSummary(
            submit_uuid=self.submit_uuid,
            outcome=outcome,
            jobs=[JobReport.from_job(self.graph.nodes[i], self.config.build_error_lines) for i in self.graph.order],
            started_at=started_at,
            finished_at=finished_at,
            warnings=list(self.warnings),
        )

    def _coordinate(self) -> None:
        graph = self.graph
        remaining = [len(d) for d in graph.deps]
        ready: List[int] = [i for i in graph.order if remaining[i] == 0]
        in_flight: Set[int] = set()

        max_workers = max(1, min(len(graph), self.pool.total_capacity))
        with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="buildyard-worker") as workers:
            while True:
                # schedule all currently ready
                while ready and not self.aborted:
                    i = ready.pop(0)
                    # jobs finished by _prepare itself report through the queue too
                    in_flight.add(i)
                    item = self._prepare(i)
                    if item is not None:
                        workers.submit(self._work, item)

                if not in_flight:
                    break

                try:
                    msg = self._messages.get(timeout=POLL_INTERVAL)
                except queue.Empty:
                    continue

                for nxt in self._handle(msg, in_flight):
                    remaining[nxt] -= 1
                    if remaining[nxt] == 0 and graph.nodes[nxt].state is JobState.PENDING:
                        ready.append(nxt)

    def _prepare(self, i: int) -> Optional[_WorkItem]:
        """
        Turn a job whose dependencies all succeeded into a work item, or
        finish it right here (cache hit, unusable dependency artifacts).
        """
        job = self.graph.nodes[i]
        deps = [self.graph.nodes[d] for d in self.graph.deps[i]]
        job.input_hash = input_hash(
            job.id,
            job.spec.script,
            [a.hash for d in deps for a in d.artifacts],
            [s.hash for s in job.spec.sources],
        )

        if self.use_cache and self._try_cache(job):
            self._messages.put(JobFinished(index=i, state=JobState.SUCCEEDED, artifacts=list(job.artifacts)))
            return None

        try:
            inputs: Dict[str, Path] = {}
            for d in deps:
                for a in d.artifacts:
                    inputs[f"{d.spec.name}-{d.spec.version}/{a.name}"] = self.publisher.locate(a.hash)
            for source in job.spec.sources:
                path = self.sources.path_of(job.spec, source)
                if not path.is_file():
                    raise ConfigError(
                        kind="source_missing",
                        message=f"Source {source.name} of {job.id} is not in the source cache",
                        details={"path": str(path)},
                    )
                inputs[f"sources/{source.file_name}"] = path
        except BuildError as e:
            self._messages.put(JobFinished(index=i, state=JobState.FAILED, error_kind=e.kind, error_message=e.message))
            return None

        self._transition(job, JobState.READY)
        request = PhaseRequest(
            spec=job.spec,
            phase="",
            job_uuid=job.uuid,
            extra_env=dict(self.extra_env),
            inputs=inputs,
            dependencies=[str(d.id) for d in deps],
        )
        return _WorkItem(index=i, request=request)

    def _try_cache(self, job: BuildJob) -> bool:
        if self.repository is None:
            return False
        try:
            cached = self.repository.find_cached_build(job.input_hash)
        except LogRepositoryError as e:
            self.warnings.append(f"build log: {e.message}")
            logger.warning("Cache lookup failed for %s: %s", job.id, e.message)
            return False
        if cached is None:
            logger.debug("[%s] cache miss (%s)", job.id, job.input_hash[:12])
            return False
        if not self.publisher.has_all(a.hash for a in cached.artifacts):
            logger.debug("[%s] cached build %s lost artifacts, rebuilding", job.id, cached.job_uuid)
            return False

        stores = tuple(s.name for s in self.publisher.stores)
        job.cached = True
        job.artifacts = [
            Artifact(hash=a.hash, name=a.name, size=a.size, package=job.id, stores=stores)
            for a in cached.artifacts
        ]
        logger.info("[%s] already built by job %s, skipping", job.id, cached.job_uuid)
        return True

    # ---- coordinator side ----

    def _write_log_file(self, job: BuildJob, execution: PhaseExecution) -> None:
        """Append one phase to log_dir/<submit>/<name>-<version>.log. Failures only warn."""
        path = self.config.log_dir / self.submit_uuid / f"{job.spec.name}-{job.spec.version}.log"
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open("a", encoding="utf-8") as f:
                f.write(
                    f"==> {execution.phase} on {execution.endpoint}: {execution.status.value}"
                    f" (exit={execution.exit_code})\n"
                )
                f.write(execution.output)
                if execution.output and not execution.output.endswith("\n"):
                    f.write("\n")
        except OSError as e:
            logger.warning("Could not write log file %s: %s", path, e)
            self.warnings.append(f"log file {path}: {e}")

    def _handle(self, msg: Message, in_flight: Set[int]) -> List[int]:
        """Apply one message. Returns the dependents unblocked by it."""
        job = self.graph.nodes[msg.index]

        if isinstance(msg, JobStarted):
            job.endpoint = msg.endpoint
            if job.started_at is None:
                job.started_at = now_utc()
            self._transition(job, JobState.RUNNING)
            return []

        if isinstance(msg, PhaseFinished):
            job.phases.append(msg.execution)
            if self.write_log_files:
                self._write_log_file(job, msg.execution)
            if self.repository is not None:
                self._mirror(self.repository.record_phase, job.uuid, msg.execution)
            return []

        if isinstance(msg, EndpointLost):
            self.warnings.append(f"endpoint {msg.endpoint} lost while building {job.id}: {msg.reason}")
            logger.warning("[%s] endpoint %s failed (%s), retrying elsewhere", job.id, msg.endpoint, msg.reason)
            return []

        # JobFinished
        in_flight.discard(msg.index)
        job.finished_at = now_utc()
        job.error_kind = msg.error_kind
        job.error_message = msg.error_message

        if msg.state is JobState.SUCCEEDED:
            job.artifacts = list(msg.artifacts)
            if self.repository is not None and job.artifacts:
                recorded = job.artifacts if not job.cached else [replace(a, stores=()) for a in job.artifacts]
                self._mirror(self.repository.record_artifacts, job.uuid, recorded)
            self._transition(job, JobState.SUCCEEDED)
            return list(self.graph.dependents[msg.index])

        self._transition(job, msg.state)
        # during an abort, downstream jobs end up Aborted instead
        if msg.state is JobState.FAILED and not self.aborted:
            logger.error("[%s] failed: %s: %s", job.id, msg.error_kind, msg.error_message)
            for d in self.graph.transitive_dependents(msg.index):
                dep = self.graph.nodes[d]
                if dep.state.terminal:
                    continue
                dep.skipped_because = job.id
                dep.finished_at = now_utc()
                self._transition(dep, JobState.SKIPPED)
        return []

    # ---- worker side ----

    def _work(self, item: _WorkItem) -> None:
        i = item.index
        spec = item.request.spec
        exclude: Set[str] = set()
        while True:
            try:
                endpoint = self.pool.acquire(exclude=exclude, cancel=self._cancel)
            except RunAborted:
                self._messages.put(JobFinished(index=i, state=JobState.ABORTED, error_kind="aborted",
                                               error_message="run aborted before the job started"))
                return
            except EndpointError as e:
                self._messages.put(JobFinished(index=i, state=JobState.FAILED, error_kind=e.kind, error_message=e.message))
                return

            try:
                self._messages.put(JobStarted(index=i, endpoint=endpoint.name))
                artifacts = self._run_phases(item, endpoint)
                self._messages.put(JobFinished(index=i, state=JobState.SUCCEEDED, artifacts=artifacts))
                return
            except EndpointError as e:
                # restart the job from its first phase somewhere else
                self.pool.mark_unavailable(endpoint, e.message)
                exclude.add(endpoint.name)
                self._messages.put(EndpointLost(index=i, endpoint=endpoint.name, reason=e.message))
            except RunAborted as e:
                self._messages.put(JobFinished(index=i, state=JobState.ABORTED, error_kind=e.kind, error_message=e.message))
                return
            except BuildError as e:
                self._messages.put(JobFinished(index=i, state=JobState.FAILED, error_kind=e.kind, error_message=e.message))
                return
            except Exception as e:
                logger.exception("[%s] unexpected error", spec.id)
                self._messages.put(JobFinished(index=i, state=JobState.FAILED, error_kind=error_kind(e),
                                               error_message=error_message(e)))
                return
            finally:
                self.pool.release(endpoint)

    def _run_phases(self, item: _WorkItem, endpoint) -> List[Artifact]:
        spec = item.request.spec
        phases = spec.phases
        for n, phase in enumerate(phases):
            last = n == len(phases) - 1
            request = replace(
                item.request,
                phase=phase,
                collect_to=self.staging.collect_target(spec.id) if last else None,
            )
            execution = self.executor.run_phase(request, endpoint, self._cancel)
            self._messages.put(PhaseFinished(index=item.index, execution=execution))
            raise_for_status(execution, spec)

        staged = self.staging.stage(spec.id, spec.outputs)
        return self.publisher.publish(staged, spec.id)


# ----------------------------------------------------------------------
# Convenience entry point
# ----------------------------------------------------------------------

def prepare_run(
    config: Configuration,
    catalog: PackageCatalog,
    targets: Sequence[str] | None = None,
    *,
    runtime_factory: RuntimeFactory = docker_cli_factory,
    repository: BuildLogRepository | None = None,
    staging_dir: str | Path | None = None,
    extra_env: Mapping[str, str] | None = None,
    use_cache: bool = True,
    repo_path: str | Path | None = None,
    verify_sources: bool = True,
    lint: bool = True,
    write_log_files: bool = False,
) -> Scheduler:
    """
    Build the graph and wire every collaborator of a Scheduler.
    Raises GraphError / ConfigError before anything runs.
    """
    graph = build_graph(catalog, targets)
    pool = EndpointPool.from_config(config, runtime_factory)
    submit_uuid = str(uuid.uuid4())
    staging = StagingStore.for_submit(config, submit_uuid, staging_dir)
    return Scheduler(
        config,
        graph,
        pool,
        ContainerExecutor(config, pool),
        ArtifactPublisher.from_config(config),
        repository,
        staging=staging,
        submit_uuid=submit_uuid,
        extra_env=extra_env,
        use_cache=use_cache,
        repo_hash=head_sha(repo_path) if repo_path is not None else None,
        verify_sources=verify_sources,
        lint=lint,
        write_log_files=write_log_files,
    )


def run_build(config: Configuration, catalog: PackageCatalog, targets: Sequence[str] | None = None, **kwargs) -> RunSummary:
    return prepare_run(config, catalog, targets, **kwargs).run()
