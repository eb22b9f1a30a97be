import threading

import pytest

from buildyard.endpoints import EndpointPool
from buildyard.errors import ConfigError, ImageNotAllowed, PhaseFailed, PhaseTimeout, TemplateError
from buildyard.executor import ContainerExecutor, PhaseRequest, raise_for_status
from buildyard.model import PhaseStatus

from conftest import make_catalog, make_config, pkg


def _setup(config, cluster, *packages):
    pool = EndpointPool.from_config(config, cluster.factory)
    catalog = make_catalog(config, *packages)
    return ContainerExecutor(config, pool), pool.acquire(), catalog


def _request(catalog, name, phase="build", **kwargs):
    spec = catalog.find(name, "1.0")
    return PhaseRequest(spec=spec, phase=phase, job_uuid="0123456789abcdef", **kwargs)


def test_successful_phase(config, cluster):
    cluster.on("zlib", output="compiling\n#BUILDYARD:STATE:OK\n")
    executor, endpoint, catalog = _setup(config, cluster, pkg("zlib"))

    execution = executor.run_phase(_request(catalog, "zlib"), endpoint)

    assert execution.status is PhaseStatus.SUCCEEDED
    assert execution.exit_code == 0
    assert execution.endpoint == "ep1"
    assert "compiling" in execution.output
    (container,) = cluster.containers
    assert container.image == "debian:bookworm"
    assert container.script.startswith("#!/bin/bash\n# build zlib build\n")
    assert container.removed


def test_environment_is_filtered_to_the_allow_list(config, cluster, monkeypatch):
    monkeypatch.setenv("Y", "from-host")
    executor, endpoint, catalog = _setup(config, cluster, pkg("zlib", environment={"X": "1", "Y": "2"}))

    executor.run_phase(_request(catalog, "zlib", extra_env={"Z": "3"}), endpoint)

    assert cluster.containers[0].env == {"X": "1"}


def test_disallowed_environment_fails_in_strict_mode(tmp_path, cluster):
    config = make_config(tmp_path, containers={"reject_disallowed_env": True})
    executor, endpoint, catalog = _setup(config, cluster, pkg("zlib", environment={"X": "1", "Y": "2"}))

    with pytest.raises(ConfigError) as e:
        executor.run_phase(_request(catalog, "zlib"), endpoint)
    assert e.value.kind == "env_not_allowed"
    assert cluster.containers == []


def test_environment_unchecked(tmp_path, cluster):
    config = make_config(tmp_path, containers={"check_env_names": False})
    executor, endpoint, catalog = _setup(config, cluster, pkg("zlib", environment={"Y": "2"}))
    executor.run_phase(_request(catalog, "zlib"), endpoint)
    assert cluster.containers[0].env == {"Y": "2"}


def test_strict_template_error_starts_no_container(config, cluster):
    executor, endpoint, catalog = _setup(config, cluster, pkg("zlib", script="make {{ package.nope }}"))
    with pytest.raises(TemplateError):
        executor.run_phase(_request(catalog, "zlib"), endpoint)
    assert cluster.containers == []


def test_image_not_allowed(config, cluster):
    executor, endpoint, catalog = _setup(config, cluster, pkg("zlib", image="alpine"))
    with pytest.raises(ImageNotAllowed) as e:
        executor.run_phase(_request(catalog, "zlib"), endpoint)
    assert e.value.kind == "image_not_allowed"
    assert cluster.containers == []


def test_package_image_lists(config, cluster):
    executor, endpoint, catalog = _setup(
        config,
        cluster,
        pkg("denied", denied_images=["debian"]),
        pkg("picky", allowed_images=["fedora:40"]),
        pkg("fine", allowed_images=["debian:bookworm"]),
    )
    with pytest.raises(ImageNotAllowed) as e:
        executor.resolve_image(catalog.find("denied", "1.0"))
    assert e.value.kind == "image_denied"
    with pytest.raises(ImageNotAllowed):
        executor.resolve_image(catalog.find("picky", "1.0"))
    assert executor.resolve_image(catalog.find("fine", "1.0")) == "debian:bookworm"


def test_image_must_be_present_when_verified(tmp_path, cluster):
    config = make_config(tmp_path, docker={"verify_images_present": True})
    cluster.missing_images.add("debian:bookworm")
    executor, endpoint, catalog = _setup(config, cluster, pkg("zlib"))
    with pytest.raises(ImageNotAllowed) as e:
        executor.run_phase(_request(catalog, "zlib"), endpoint)
    assert e.value.kind == "image_not_present"


def test_non_zero_exit_is_a_failed_phase(config, cluster):
    cluster.on("zlib", exit_code=2, output="error: boom\n")
    executor, endpoint, catalog = _setup(config, cluster, pkg("zlib"))

    execution = executor.run_phase(_request(catalog, "zlib"), endpoint)

    assert execution.status is PhaseStatus.FAILED
    assert execution.exit_code == 2
    assert cluster.containers[0].removed
    with pytest.raises(PhaseFailed):
        raise_for_status(execution, catalog.find("zlib", "1.0"))


def test_error_marker_fails_a_clean_exit(config, cluster):
    cluster.on("zlib", output="#BUILDYARD:STATE:ERR:tests failed\n")
    executor, endpoint, catalog = _setup(config, cluster, pkg("zlib"))
    execution = executor.run_phase(_request(catalog, "zlib"), endpoint)
    assert execution.status is PhaseStatus.FAILED
    assert execution.error_message == "tests failed"


def test_timeout_tears_the_container_down(tmp_path, cluster):
    config = make_config(tmp_path, phase_timeout=0.2)
    cluster.on("zlib", duration=None)
    executor, endpoint, catalog = _setup(config, cluster, pkg("zlib"))

    execution = executor.run_phase(_request(catalog, "zlib"), endpoint)

    assert execution.status is PhaseStatus.TIMEOUT
    (container,) = cluster.containers
    assert container.stopped and container.removed
    with pytest.raises(PhaseTimeout):
        raise_for_status(execution, catalog.find("zlib", "1.0"))


def test_cancellation_tears_the_container_down(config, cluster):
    cluster.on("zlib", duration=None)
    executor, endpoint, catalog = _setup(config, cluster, pkg("zlib"))
    cancel = threading.Event()
    results = []

    t = threading.Thread(target=lambda: results.append(executor.run_phase(_request(catalog, "zlib"), endpoint, cancel)))
    t.start()
    assert cluster.started.wait(timeout=5)
    cancel.set()
    t.join(timeout=5)

    assert results[0].status is PhaseStatus.ABORTED
    assert cluster.containers[0].stopped and cluster.containers[0].removed


def test_outputs_and_inputs_are_copied(config, cluster, tmp_path):
    dep_file = tmp_path / "libz.a"
    dep_file.write_bytes(b"archive")
    cluster.on("curl", outputs={"curl.tar": b"tarball"})
    executor, endpoint, catalog = _setup(config, cluster, pkg("curl"))

    collect = tmp_path / "collected"
    execution = executor.run_phase(
        _request(catalog, "curl", inputs={"zlib-1.0/libz.a": dep_file}, collect_to=collect),
        endpoint,
    )

    assert execution.succeeded
    assert cluster.containers[0].inputs == ["zlib-1.0/libz.a"]
    assert (collect / "curl.tar").read_bytes() == b"tarball"


def test_existing_shebang_is_kept(config, cluster):
    executor, endpoint, catalog = _setup(config, cluster, pkg("zlib", script="#!/bin/sh\n# build zlib build\n"))
    executor.run_phase(_request(catalog, "zlib"), endpoint)
    assert cluster.containers[0].script.startswith("#!/bin/sh\n")
