import pytest
from fastapi.testclient import TestClient

from buildyard.api import create_app
from buildyard.errors import LogRepositoryError

from conftest import make_catalog, pkg


@pytest.fixture
def built(config, cluster, repo, make_scheduler):
    cluster.on("zlib", phase="build", outputs={"zlib.tar": b"zlib bytes"}, output="ok\n")
    cluster.on("broken", exit_code=1, output="boom\n")
    catalog = make_catalog(config, pkg("zlib"), pkg("curl", "zlib"), pkg("broken"), pkg("app", "broken"))
    summary = make_scheduler(config, catalog, repository=repo).run()
    return summary, TestClient(create_app(repo))


def test_submits(built):
    summary, client = built

    r = client.get("/submits")
    assert r.status_code == 200
    (submit,) = r.json()
    assert submit["uuid"] == summary.submit_uuid
    assert submit["outcome"] == "partial-failure"

    assert client.get(f"/submits/{summary.submit_uuid}").json()["images"] == ["debian"]
    assert client.get("/submits/nope").status_code == 404


def test_jobs_of_submit(built):
    summary, client = built
    jobs = {j["package_name"]: j for j in client.get(f"/submits/{summary.submit_uuid}/jobs").json()}

    assert jobs["zlib"]["state"] == "succeeded"
    assert jobs["broken"]["error_kind"] == "phase_failed"
    assert jobs["app"]["state"] == "skipped"
    assert jobs["app"]["skipped_because"] == "broken 1.0"
    assert client.get("/submits/nope/jobs").status_code == 404


def test_job_detail(built):
    summary, client = built
    job = client.get(f"/jobs/{summary.job('zlib').uuid}").json()

    assert [p["phase"] for p in job["phases"]] == ["sourcecheck", "build"]
    assert job["phases"][1]["output"] == "ok\n"
    assert [a["name"] for a in job["artifacts"]] == ["zlib.tar"]
    assert job["input_hash"]
    assert client.get("/jobs/nope").status_code == 404


def test_artifacts_and_releases(built):
    summary, client = built
    (digest,) = summary.job("zlib").artifacts

    artifacts = client.get("/artifacts", params={"package": "zlib"}).json()
    assert [a["hash"] for a in artifacts] == [digest]
    assert client.get("/artifacts", params={"package": "curl"}).json() == []

    releases = client.get("/releases").json()
    assert [(r["artifact_hash"], r["store"]) for r in releases] == [(digest, "default")]
    assert client.get("/releases", params={"store": "stable"}).json() == []


def test_repository_errors_are_503(repo, monkeypatch):
    def boom(*args, **kwargs):
        raise LogRepositoryError(kind="read_failed", message="database is locked")

    monkeypatch.setattr(repo, "list_submits", boom)
    r = TestClient(create_app(repo)).get("/submits")
    assert r.status_code == 503
    assert r.json() == {"detail": "database is locked", "kind": "read_failed"}
