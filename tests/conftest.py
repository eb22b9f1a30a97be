from __future__ import annotations

import itertools
import re
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import pytest

from buildyard.buildlog import SqlBuildLogRepository
from buildyard.catalog import PackageCatalog
from buildyard.config import Configuration, EndpointConfig, configuration_from_dict
from buildyard.docker import ContainerRuntime
from buildyard.errors import EndpointError
from buildyard.scheduler import prepare_run

DEFAULT_SCRIPT = "#!/bin/bash\n# build {{ package.name }} {{ phase }}\necho building {{ package.name }}\n"
_SCRIPT_RE = re.compile(r"^# build (\S+) (\S+)$", re.MULTILINE)


# ----------------------------------------------------------------------
# Scripted container runtime
# ----------------------------------------------------------------------

@dataclass
class Behavior:
    exit_code: int = 0
    output: str = ""
    # files the container leaves in its output dir
    outputs: Dict[str, bytes] = field(default_factory=dict)
    # seconds until the container exits; None = runs until stopped
    duration: Optional[float] = 0.0


@dataclass
class ContainerRecord:
    id: str
    endpoint: str
    image: str
    env: Dict[str, str]
    name: Optional[str]
    script: str = ""
    package: Optional[str] = None
    phase: Optional[str] = None
    inputs: List[str] = field(default_factory=list)
    started_at: Optional[float] = None
    exited: bool = False
    stopped: bool = False
    removed: bool = False


class FakeCluster:
    """
    Shared state behind every FakeRuntime of a test: what each
    (package, phase) container does, and what every container did.
    """

    def __init__(self):
        self.behaviors: Dict[Tuple[str, Optional[str]], Behavior] = {}
        self.containers: List[ContainerRecord] = []
        self.unreachable: set[str] = set()
        self.broken: set[str] = set()  # reachable, but create() fails
        self.missing_images: set[str] = set()
        self.lock = threading.Lock()
        self.running = 0
        self.peak_running = 0
        self.started = threading.Event()
        self._ids = itertools.count(1)

    def on(self, package: str, phase: str | None = None, **kwargs) -> Behavior:
        b = Behavior(**kwargs)
        self.behaviors[(package, phase)] = b
        return b

    def behavior(self, rec: ContainerRecord) -> Behavior:
        return (
            self.behaviors.get((rec.package, rec.phase))
            or self.behaviors.get((rec.package, None))
            or Behavior()
        )

    def started_containers(self) -> List[ContainerRecord]:
        return [c for c in self.containers if c.started_at is not None]

    def packages_run(self) -> List[str]:
        return [c.package for c in self.started_containers()]

    def factory(self, name: str, cfg: EndpointConfig) -> FakeRuntime:
        return FakeRuntime(name, self)


class FakeRuntime(ContainerRuntime):
    def __init__(self, name: str, cluster: FakeCluster):
        self.name = name
        self.cluster = cluster

    def _check(self):
        if self.name in self.cluster.unreachable:
            raise EndpointError(kind="endpoint_unreachable", message=f"{self.name} is unreachable")

    def _get(self, container_id: str) -> ContainerRecord:
        for c in self.cluster.containers:
            if c.id == container_id:
                return c
        raise EndpointError(kind="docker_command_failed", message=f"No such container: {container_id}")

    def ping(self):
        self._check()

    def has_image(self, image):
        self._check()
        return image not in self.cluster.missing_images

    def create(self, image, *, command, env, name=None):
        self._check()
        if self.name in self.cluster.broken:
            raise EndpointError(kind="docker_command_failed", message=f"create failed on {self.name}")
        with self.cluster.lock:
            rec = ContainerRecord(
                id=f"c{next(self.cluster._ids)}", endpoint=self.name, image=image, env=dict(env), name=name
            )
            self.cluster.containers.append(rec)
        return rec.id

    def copy_to(self, container_id, src, dest):
        rec = self._get(container_id)
        src = Path(src)
        if src.is_file():
            rec.script = src.read_text(encoding="utf-8")
            m = _SCRIPT_RE.search(rec.script)
            if m:
                rec.package, rec.phase = m.group(1), m.group(2)
        else:
            rec.inputs.extend(sorted(p.relative_to(src).as_posix() for p in src.rglob("*") if p.is_file()))

    def start(self, container_id):
        rec = self._get(container_id)
        with self.cluster.lock:
            rec.started_at = time.monotonic()
            self.cluster.running += 1
            self.cluster.peak_running = max(self.cluster.peak_running, self.cluster.running)
        self.cluster.started.set()

    def _exit(self, rec: ContainerRecord):
        with self.cluster.lock:
            if rec.started_at is not None and not rec.exited:
                rec.exited = True
                self.cluster.running -= 1

    def wait(self, container_id, timeout):
        rec = self._get(container_id)
        b = self.cluster.behavior(rec)
        deadline = time.monotonic() + timeout
        while True:
            if rec.stopped:
                return 137
            if b.duration is not None and time.monotonic() - rec.started_at >= b.duration:
                self._exit(rec)
                return b.exit_code
            if time.monotonic() >= deadline:
                return None
            time.sleep(min(0.01, max(0.0, deadline - time.monotonic())))

    def logs(self, container_id):
        return self.cluster.behavior(self._get(container_id)).output

    def copy_from(self, container_id, src, dest):
        b = self.cluster.behavior(self._get(container_id))
        if not b.outputs:
            return False
        for rel, data in b.outputs.items():
            p = Path(dest) / rel
            p.parent.mkdir(parents=True, exist_ok=True)
            p.write_bytes(data)
        return True

    def stop(self, container_id):
        rec = self._get(container_id)
        rec.stopped = True
        self._exit(rec)

    def remove(self, container_id):
        rec = self._get(container_id)
        rec.removed = True
        self._exit(rec)


# ----------------------------------------------------------------------
# Factories
# ----------------------------------------------------------------------

def _merge(base: Dict[str, Any], over: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(base)
    for k, v in over.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _merge(out[k], v)
        else:
            out[k] = v
    return out


def config_dict(tmp_path: Path, **overrides) -> Dict[str, Any]:
    base = {
        "releases_root": str(tmp_path / "releases"),
        "release_stores": ["default"],
        "staging": str(tmp_path / "staging"),
        "source_cache": str(tmp_path / "sources"),
        "log_dir": str(tmp_path / "logs"),
        "database_url": f"sqlite:///{tmp_path / 'buildlog.db'}",
        "available_phases": ["sourcecheck", "build"],
        "docker": {
            "images": [{"name": "debian:bookworm", "short_name": "debian"}],
            "endpoints": {
                "ep1": {"uri": "/var/run/docker.sock", "endpoint_type": "socket", "maxjobs": 2},
            },
        },
        "containers": {"check_env_names": True, "allowed_env": ["X"]},
    }
    merged = _merge(base, overrides)
    # endpoints given explicitly replace the default one
    endpoints = overrides.get("docker", {}).get("endpoints")
    if endpoints is not None:
        merged["docker"]["endpoints"] = endpoints
    return merged


def make_config(tmp_path: Path, **overrides) -> Configuration:
    return configuration_from_dict(config_dict(tmp_path, **overrides))


def pkg(name: str, *deps: str, **kwargs) -> Dict[str, Any]:
    d = {"name": name, "version": "1.0", "image": "debian", "script": DEFAULT_SCRIPT, "dependencies": list(deps)}
    d.update(kwargs)
    return d


def make_catalog(config: Configuration, *packages: Dict[str, Any]) -> PackageCatalog:
    return PackageCatalog.from_dicts(packages, config.phase_vocabulary)


@pytest.fixture
def cluster():
    return FakeCluster()


@pytest.fixture
def config(tmp_path):
    return make_config(tmp_path)


@pytest.fixture
def repo(tmp_path):
    return SqlBuildLogRepository.from_url(f"sqlite:///{tmp_path / 'buildlog.db'}")


@pytest.fixture
def make_scheduler(cluster):
    def _make(config, catalog, targets=None, **kwargs):
        return prepare_run(config, catalog, targets, runtime_factory=cluster.factory, **kwargs)
    return _make
