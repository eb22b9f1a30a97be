from datetime import datetime, timezone

import pytest

from buildyard.buildlog import SqlBuildLogRepository
from buildyard.buildlog.models import JobTransition
from buildyard.dag import build_graph
from buildyard.errors import LogRepositoryError
from buildyard.model import Artifact, JobState, PackageId, PhaseExecution, PhaseStatus

from conftest import make_catalog, pkg

T0 = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


def _graph(config):
    return build_graph(make_catalog(config, pkg("zlib"), pkg("curl", "zlib")))


def _record_run(repo, graph, submit="s-1"):
    repo.record_submit(submit, targets=["curl 1.0"], images=["debian"], repo_hash="abc", submitted_at=T0)
    repo.record_jobs(submit, graph.nodes)
    zlib = graph.job(PackageId("zlib", "1.0"))
    zlib.state = JobState.RUNNING
    zlib.endpoint = "ep1"
    zlib.input_hash = "f" * 64
    repo.record_job_transition(zlib)
    repo.record_phase(zlib.uuid, PhaseExecution(
        phase="build", endpoint="ep1", status=PhaseStatus.SUCCEEDED, exit_code=0,
        output="ok\n", started_at=T0, finished_at=T0,
    ))
    repo.record_artifacts(zlib.uuid, [Artifact(hash="a" * 64, name="zlib.tar", size=3, package=zlib.id,
                                               stores=("default",))])
    zlib.state = JobState.SUCCEEDED
    repo.record_job_transition(zlib)
    return zlib


def test_history_queries(config, repo):
    graph = _graph(config)
    zlib = _record_run(repo, graph)
    curl = graph.job(PackageId("curl", "1.0"))
    curl.state = JobState.SKIPPED
    curl.skipped_because = zlib.id
    repo.record_job_transition(curl)
    repo.finish_submit("s-1", "partial-failure")

    (submit,) = repo.list_submits()
    assert submit.uuid == "s-1"
    assert submit.outcome == "partial-failure"
    assert submit.repo_hash == "abc"
    assert repo.get_submit("nope") is None

    jobs = {j.package_name: j for j in repo.jobs_of_submit("s-1")}
    assert jobs["zlib"].state == "succeeded"
    assert jobs["curl"].state == "skipped"
    assert jobs["curl"].skipped_because == "zlib 1.0"

    job = repo.get_job(zlib.uuid)
    assert [p.phase for p in job.phases] == ["build"]
    assert job.phases[0].output == "ok\n"
    assert [a.name for a in job.artifacts] == ["zlib.tar"]

    (release,) = repo.list_releases()
    assert release.store == "default"
    assert repo.list_releases(store="stable") == []
    assert [a.package_name for a in repo.list_artifacts(package="zlib")] == ["zlib"]


def test_transitions_are_appended(config, repo):
    graph = _graph(config)
    zlib = _record_run(repo, graph)
    with repo._sessions() as s:
        states = [t.state for t in s.query(JobTransition).filter_by(job_uuid=zlib.uuid).order_by(JobTransition.id)]
    assert states == ["running", "succeeded"]


def test_find_cached_build(config, repo):
    graph = _graph(config)
    zlib = _record_run(repo, graph)

    cached = repo.find_cached_build("f" * 64)
    assert cached.job_uuid == zlib.uuid
    assert [a.hash for a in cached.artifacts] == ["a" * 64]
    assert repo.find_cached_build("0" * 64) is None


def test_write_failures_are_log_repository_errors(repo):
    with pytest.raises(LogRepositoryError):
        repo.finish_submit("never-recorded", "success")

    repo.record_submit("s-1", targets=[], images=[], repo_hash=None)
    with pytest.raises(LogRepositoryError) as e:
        repo.record_submit("s-1", targets=[], images=[], repo_hash=None)
    assert e.value.kind == "write_failed"


def test_unreachable_database():
    with pytest.raises(LogRepositoryError) as e:
        SqlBuildLogRepository.from_url("sqlite:////nonexistent-dir/for/sure/buildlog.db")
    assert e.value.kind == "database_unavailable"


def test_malformed_database_url():
    with pytest.raises(LogRepositoryError) as e:
        SqlBuildLogRepository.from_url("not a url")
    assert e.value.kind == "database_unavailable"


def test_missing_database_driver(monkeypatch):
    from buildyard.buildlog import repository

    def no_driver(url):
        raise ModuleNotFoundError("No module named 'psycopg'")

    monkeypatch.setattr(repository, "make_engine", no_driver)
    with pytest.raises(LogRepositoryError) as e:
        SqlBuildLogRepository.from_url("postgresql+psycopg://buildyard@db/buildyard")
    assert e.value.kind == "database_unavailable"
    assert "psycopg" in e.value.message
