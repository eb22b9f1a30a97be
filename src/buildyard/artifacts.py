# artifacts.py
from __future__ import annotations

import hashlib
import json
import logging
import os
import shutil
import tempfile
import time
from dataclasses import dataclass
from fnmatch import fnmatch
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence

from .config import Configuration
from .errors import ArtifactError
from .model import Artifact, PackageId

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------
# Layout
# ---------------------------------------------------------------------
# staging/
#   <submit-uuid>/
#     <name>-<version>/          files as the container left them in /outputs
#
# release store (releases_root/<store>/):
#   <hash[:2]>/
#     <hash>                     the artifact bytes
#     <hash>.manifest.json       name, package, size, published_at
#
# The content hash is SHA-256 over the artifact bytes only, so it does not
# depend on the endpoint, the path or the package that produced it.
# ---------------------------------------------------------------------

CHUNK = 1024 * 1024


def sha256_file(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        while True:
            chunk = f.read(CHUNK)
            if not chunk:
                break
            h.update(chunk)
    return h.hexdigest()


def sha256_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _json_dumps_stable(obj) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def input_hash(
    package: PackageId,
    script: str,
    dependency_hashes: Iterable[str],
    source_hashes: Iterable[str] = (),
) -> str:
    """
    Cache key of a job: package identity + script + dependency artifact
    hashes + pinned source hashes.
    """
    payload = {
        "v": 1,
        "package": [package.name, package.version],
        "script": sha256_bytes(script.encode("utf-8")),
        "deps": sorted(dependency_hashes),
        "sources": sorted(source_hashes),
    }
    return sha256_bytes(_json_dumps_stable(payload).encode("utf-8"))


@dataclass(frozen=True)
class StagedArtifact:
    name: str      # path relative to the job's staging dir, "/"-separated
    path: Path
    hash: str
    size: int


# ---------------------------------------------------------------------
# Staging
# ---------------------------------------------------------------------

class StagingStore:
    """Transient holding area between container output and publication."""

    def __init__(self, root: str | Path):
        self.root = Path(root).resolve()

    @classmethod
    def for_submit(cls, config: Configuration, submit_uuid: str, override: str | Path | None = None) -> StagingStore:
        root = Path(override) if override is not None else config.staging / submit_uuid
        return cls(root)

    def job_dir(self, package: PackageId) -> Path:
        return self.root / f"{package.name}-{package.version}"

    def collect_target(self, package: PackageId) -> Path:
        """
        Fresh, not-yet-existing directory the container output is copied into.
        """
        d = self.job_dir(package)
        if d.exists():
            shutil.rmtree(d)
        d.parent.mkdir(parents=True, exist_ok=True)
        return d

    def stage(self, package: PackageId, patterns: Sequence[str] = ()) -> List[StagedArtifact]:
        """
        Hash every collected file (matching `patterns`, if any) of a job.
        """
        d = self.job_dir(package)
        if not d.exists():
            return []

        out: List[StagedArtifact] = []
        for p in sorted(d.rglob("*")):
            if not p.is_file():
                continue
            rel = p.relative_to(d).as_posix()
            if patterns and not any(fnmatch(rel, pat) for pat in patterns):
                continue
            try:
                out.append(StagedArtifact(name=rel, path=p, hash=sha256_file(p), size=p.stat().st_size))
            except OSError as e:
                raise ArtifactError(kind="staging_failed", message=f"Cannot read staged file {p}: {e}") from e
        logger.debug("Staged %d artifact(s) for %s", len(out), package)
        return out


# ---------------------------------------------------------------------
# Release stores
# ---------------------------------------------------------------------

class ReleaseStore:
    """
    A named, content-addressed release directory.

    publish() is atomic (temp file in the target directory, then rename)
    and idempotent (an existing hash is a no-op).
    """

    def __init__(self, name: str, root: str | Path):
        self.name = name
        self.root = Path(root).resolve()

    def __repr__(self) -> str:
        return f"ReleaseStore({self.name!r}, {str(self.root)!r})"

    def _dir(self, digest: str) -> Path:
        return self.root / digest[:2]

    def blob_path(self, digest: str) -> Path:
        return self._dir(digest) / digest

    def manifest_path(self, digest: str) -> Path:
        return self._dir(digest) / f"{digest}.manifest.json"

    def has(self, digest: str) -> bool:
        return self.blob_path(digest).is_file()

    def publish(self, staged: StagedArtifact, package: PackageId) -> bool:
        """
        Returns True if the blob was written, False if the hash was already present.
        """
        final = self.blob_path(staged.hash)
        if final.exists():
            logger.debug("%s already in store %s", staged.hash[:12], self.name)
            return False

        d = self._dir(staged.hash)
        tmp: Optional[Path] = None
        try:
            d.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=f".{staged.hash[:12]}.", suffix=".tmp", dir=d)
            tmp = Path(tmp_name)
            with os.fdopen(fd, "wb") as out, staged.path.open("rb") as src:
                shutil.copyfileobj(src, out, CHUNK)
                out.flush()
                os.fsync(out.fileno())

            written = sha256_file(tmp)
            if written != staged.hash:
                raise ArtifactError(
                    kind="hash_mismatch",
                    message=f"{staged.name}: staged hash {staged.hash} but wrote {written}",
                    details={"store": self.name},
                )

            manifest = {
                "hash": staged.hash,
                "name": staged.name,
                "size": staged.size,
                "package": package.name,
                "version": package.version,
                "published_at_unix": int(time.time()),
            }
            man_tmp = tmp.with_suffix(".manifest.tmp")
            man_tmp.write_text(json.dumps(manifest, sort_keys=True, indent=2, ensure_ascii=False), encoding="utf-8")
            man_tmp.replace(self.manifest_path(staged.hash))

            # same-hash publishers race here; every candidate holds identical bytes
            tmp.replace(final)
            tmp = None
        except OSError as e:
            raise ArtifactError(
                kind="publish_failed",
                message=f"Cannot publish {staged.name} to release store {self.name}: {e}",
                details={"store": self.name, "root": str(self.root)},
            ) from e
        finally:
            if tmp is not None and tmp.exists():
                tmp.unlink(missing_ok=True)

        logger.info("Published %s (%s) to %s", staged.name, staged.hash[:12], self.name)
        return True

    def manifest(self, digest: str) -> Dict:
        p = self.manifest_path(digest)
        if not p.exists():
            return {}
        return json.loads(p.read_text(encoding="utf-8"))

    def list_hashes(self) -> List[str]:
        if not self.root.exists():
            return []
        return sorted(
            p.name
            for p in self.root.glob("??/*")
            if p.is_file() and not p.name.endswith((".json", ".tmp"))
        )


class ArtifactPublisher:
    """Publishes staged artifacts into every configured release store."""

    def __init__(self, stores: Sequence[ReleaseStore]):
        if not stores:
            raise ArtifactError(kind="no_release_store", message="No release store configured")
        self.stores = list(stores)

    @classmethod
    def from_config(cls, config: Configuration) -> ArtifactPublisher:
        return cls([ReleaseStore(name, root) for name, root in config.release_store_roots().items()])

    def publish(self, staged: Sequence[StagedArtifact], package: PackageId) -> List[Artifact]:
        artifacts: List[Artifact] = []
        for s in staged:
            for store in self.stores:
                store.publish(s, package)
            artifacts.append(
                Artifact(
                    hash=s.hash,
                    name=s.name,
                    size=s.size,
                    package=package,
                    stores=tuple(store.name for store in self.stores),
                )
            )
        return artifacts

    def has_all(self, hashes: Iterable[str]) -> bool:
        return all(store.has(h) for h in hashes for store in self.stores)

    def locate(self, digest: str) -> Path:
        for store in self.stores:
            if store.has(digest):
                return store.blob_path(digest)
        raise ArtifactError(kind="artifact_missing", message=f"Artifact {digest} is in no release store")
