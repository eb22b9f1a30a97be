# cli.py
from __future__ import annotations

import signal
import sys
from pathlib import Path
from typing import Dict, Tuple

import click

from buildyard.buildlog import BuildLogRepository, SqlBuildLogRepository
from buildyard.catalog import PackageCatalog
from buildyard.config import Configuration, load_configuration
from buildyard.errors import BuildError, LogRepositoryError
from buildyard.scheduler import prepare_run
from buildyard.ui.console import Console, get_console, set_console

DEFAULT_CONFIG = "buildyard.toml"


def _fail(exc: BuildError, suggestion: str | None = None) -> None:
    console = get_console()
    console.print_error(exc.kind, exc.message, details=[f"{k}={v}" for k, v in exc.details.items()] or None,
                        suggestion=suggestion)
    sys.exit(1)


def _config(ctx: click.Context) -> Configuration:
    cached = ctx.obj.get("config")
    if cached is not None:
        return cached
    path = Path(ctx.obj["config_path"])
    try:
        config = load_configuration(path)
    except BuildError as e:
        _fail(e, suggestion=f"Create {DEFAULT_CONFIG} or pass --config PATH")
    ctx.obj["config"] = config
    return config


def _repository(ctx: click.Context, *, required: bool) -> BuildLogRepository | None:
    config = _config(ctx)
    url = ctx.obj.get("database_url") or config.database_uri()
    try:
        return SqlBuildLogRepository.from_url(url)
    except LogRepositoryError as e:
        if required:
            _fail(e)
        get_console().print_error("build log unavailable", e.message,
                                  suggestion="Continuing without build history and caching.")
        return None


def _parse_env(pairs: Tuple[str, ...]) -> Dict[str, str]:
    env: Dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected KEY=VALUE, got {pair!r}", param_hint="--env")
        env[key] = value
    return env


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.option(
    "--config",
    "config_path",
    default=DEFAULT_CONFIG,
    envvar="BUILDYARD_CONFIG",
    show_default=True,
    help="Configuration file",
)
@click.option("--database-url", default=None, help="Build log database URL (overrides the configuration)")
@click.pass_context
def cli(ctx, debug, config_path, database_url):
    """buildyard: build interdependent packages in containers."""
    console = Console(debug=debug)
    console.configure_logging()
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug
    ctx.obj["config_path"] = config_path
    ctx.obj["database_url"] = database_url


@cli.command()
@click.argument("targets", nargs=-1)
@click.option("--repo", "repo_path", default=".", show_default=True,
              type=click.Path(exists=True, file_okay=False, path_type=Path),
              help="Package repository (tree of pkg.toml files)")
@click.option("--env", "env_pairs", multiple=True, metavar="KEY=VALUE",
              help="Extra environment variable for every job (still subject to allowed_env)")
@click.option("--staging-dir", default=None, type=click.Path(file_okay=False, path_type=Path),
              help="Staging directory (defaults to <staging>/<submit-uuid>)")
@click.option("--no-cache", is_flag=True, default=False, help="Rebuild even if an identical build is recorded")
@click.option("--no-verification", is_flag=True, default=False, help="Do not verify source hashes before building")
@click.option("--no-lint", is_flag=True, default=False, help="Do not run the configured script linter")
@click.option("--write-log-file", is_flag=True, default=False, help="Also write each job's output to <log_dir>/<submit-uuid>/")
@click.pass_context
def build(ctx, targets, repo_path, env_pairs, staging_dir, no_cache, no_verification, no_lint, write_log_file):
    """Build TARGETS (package names, or "name version") and their dependencies."""
    console = get_console()
    config = _config(ctx)
    extra_env = _parse_env(env_pairs)
    if no_verification:
        console.print_warning("No hash verification will be performed")

    try:
        catalog = PackageCatalog.load(repo_path, config.phase_vocabulary)
        scheduler = prepare_run(
            config,
            catalog,
            list(targets) or None,
            repository=_repository(ctx, required=False),
            staging_dir=staging_dir,
            extra_env=extra_env,
            use_cache=not no_cache,
            repo_path=repo_path,
            verify_sources=not no_verification,
            lint=not no_lint,
            write_log_files=write_log_file,
        )
    except BuildError as e:
        _fail(e)

    console.print_run_started(
        submit=scheduler.submit_uuid,
        repository=str(repo_path.resolve()),
        targets=list(targets),
        job_count=len(scheduler.graph),
        repo_hash=scheduler.repo_hash,
    )

    def _on_sigint(signum, frame):
        # first ^C aborts cleanly, the second one interrupts
        if scheduler.aborted:
            raise KeyboardInterrupt
        console.print_info("\nAborting, waiting for running containers to be removed...")
        scheduler.abort()

    previous = signal.signal(signal.SIGINT, _on_sigint)
    try:
        summary = scheduler.run()
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except BuildError as e:
        _fail(e)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)
    finally:
        signal.signal(signal.SIGINT, previous)

    console.print_results(summary)
    sys.exit(summary.exit_code)


@cli.command()
@click.option("--repo", "repo_path", default=".", show_default=True,
              type=click.Path(exists=True, file_okay=False, path_type=Path))
@click.pass_context
def packages(ctx, repo_path):
    """List the packages of a repository."""
    config = _config(ctx)
    try:
        catalog = PackageCatalog.load(repo_path, config.phase_vocabulary)
    except BuildError as e:
        _fail(e)
    get_console().print_table(
        ["NAME", "VERSION", "IMAGE", "DEPENDENCIES"],
        [(s.name, s.version, s.image, ", ".join(str(d) for d in s.dependencies)) for s in catalog],
    )


@cli.command()
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=8000, type=int, show_default=True)
@click.pass_context
def serve(ctx, host, port):
    """Serve the build log over HTTP (read-only)."""
    import uvicorn

    from buildyard.api import create_app

    app = create_app(_repository(ctx, required=True))
    uvicorn.run(app, host=host, port=port)


# ----------------------------------------------------------------------
# Build log queries
# ----------------------------------------------------------------------

@cli.group()
def db():
    """Query the build log."""


@db.command("submits")
@click.option("--limit", default=20, type=int, show_default=True)
@click.pass_context
def db_submits(ctx, limit):
    repo = _repository(ctx, required=True)
    rows = repo.list_submits(limit=limit)
    get_console().print_table(
        ["SUBMIT", "SUBMITTED", "OUTCOME", "TARGETS", "COMMIT"],
        [
            (s.uuid, s.submitted_at.strftime("%Y-%m-%d %H:%M:%S"), s.outcome or "running",
             " ".join(s.targets), (s.repo_hash or "")[:12])
            for s in rows
        ],
    )


@db.command("jobs")
@click.argument("submit_uuid")
@click.pass_context
def db_jobs(ctx, submit_uuid):
    """Jobs of one submit."""
    repo = _repository(ctx, required=True)
    if repo.get_submit(submit_uuid) is None:
        get_console().print_error("Submit not found", f"No submit {submit_uuid} in the build log")
        sys.exit(1)
    get_console().print_table(
        ["JOB", "PACKAGE", "VERSION", "STATE", "ENDPOINT", "ERROR"],
        [
            (j.uuid, j.package_name, j.package_version, j.state + (" (cached)" if j.cached else ""),
             j.endpoint, j.error_kind or (f"after {j.skipped_because}" if j.skipped_because else ""))
            for j in repo.jobs_of_submit(submit_uuid)
        ],
    )


@db.command("job")
@click.argument("job_uuid")
@click.option("--logs/--no-logs", default=False, help="Print the output of every phase")
@click.pass_context
def db_job(ctx, job_uuid, logs):
    """One job with its phases and artifacts."""
    console = get_console()
    repo = _repository(ctx, required=True)
    job = repo.get_job(job_uuid)
    if job is None:
        console.print_error("Job not found", f"No job {job_uuid} in the build log")
        sys.exit(1)

    console.print_header(f"{job.package_name} {job.package_version} ({job.state})")
    console.print_info(f"Submit: {job.submit_uuid}")
    console.print_info(f"Image: {job.image}")
    if job.endpoint:
        console.print_info(f"Endpoint: {job.endpoint}")
    if job.error_kind:
        console.print_info(f"Error: {job.error_kind}: {job.error_message}")
    for p in job.phases:
        duration = (p.finished_at - p.started_at).total_seconds()
        console.print_info(f"  {p.phase}: {p.status} exit={p.exit_code} {duration:.1f}s on {p.endpoint}")
        if logs and p.output:
            for line in p.output.splitlines():
                console.print_info(f"    | {line}")
    for a in job.artifacts:
        console.print_info(f"  artifact {a.hash} {a.name} ({a.size} bytes)")


@db.command("artifacts")
@click.option("--package", default=None)
@click.option("--limit", default=50, type=int, show_default=True)
@click.pass_context
def db_artifacts(ctx, package, limit):
    repo = _repository(ctx, required=True)
    get_console().print_table(
        ["HASH", "NAME", "SIZE", "PACKAGE", "VERSION"],
        [(a.hash[:16], a.name, a.size, a.package_name, a.package_version)
         for a in repo.list_artifacts(package=package, limit=limit)],
    )


@db.command("releases")
@click.option("--store", default=None)
@click.option("--limit", default=50, type=int, show_default=True)
@click.pass_context
def db_releases(ctx, store, limit):
    repo = _repository(ctx, required=True)
    get_console().print_table(
        ["HASH", "STORE", "RELEASED", "PACKAGE", "VERSION"],
        [(r.artifact_hash[:16], r.store, r.released_at.strftime("%Y-%m-%d %H:%M:%S"), r.package_name, r.package_version)
         for r in repo.list_releases(store=store, limit=limit)],
    )


if __name__ == "__main__":
    cli()
