# sources.py
from __future__ import annotations

import hashlib
import logging
from pathlib import Path
from typing import Dict, Iterable

from .artifacts import CHUNK
from .config import Configuration
from .errors import ConfigError
from .model import PackageSource, PackageSpec

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------
# Layout
# ---------------------------------------------------------------------
# source_cache/
#   <name>-<version>/
#     <source-name>-<hash>.source
#
# Files get into the cache by other means (a download tool, or by hand for
# sources marked download_manually). A run only reads them.
# ---------------------------------------------------------------------


def file_digest(path: Path, hash_type: str) -> str:
    h = hashlib.new(hash_type)
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(CHUNK), b""):
            h.update(chunk)
    return h.hexdigest()


class SourceCache:
    """Read-only view of the source cache directory."""

    def __init__(self, root: Path):
        self.root = Path(root)

    @classmethod
    def from_config(cls, config: Configuration) -> SourceCache:
        return cls(config.source_cache)

    def path_of(self, package: PackageSpec, source: PackageSource) -> Path:
        return self.root / f"{package.name}-{package.version}" / source.file_name

    def verify(self, package: PackageSpec, source: PackageSource) -> Path:
        """
        Check one cached source against its pinned hash.

        Raises ConfigError:
          source_missing        the file is not in the cache
          source_hash_mismatch  the file content does not match the hash
        """
        path = self.path_of(package, source)
        if not path.is_file():
            hint = "Place the file there by hand." if source.download_manually else f"Download {source.url}"
            raise ConfigError(
                kind="source_missing",
                message=f"Source {source.name} of {package.id} is not in the source cache",
                details={"path": str(path), "hint": hint},
            )
        actual = file_digest(path, source.hash_type)
        if actual != source.hash:
            raise ConfigError(
                kind="source_hash_mismatch",
                message=f"Hash mismatch, expected '{source.hash}', got '{actual}'",
                details={"path": str(path), "hash_type": source.hash_type},
            )
        return path

    def verify_all(self, packages: Iterable[PackageSpec]) -> int:
        """
        Verify every source of every package, reporting all failures at once.
        Returns the number of verified sources.
        """
        failures: Dict[str, str] = {}
        count = 0
        for package in packages:
            for source in package.sources:
                try:
                    self.verify(package, source)
                except ConfigError as e:
                    logger.error("[%s] source %s: %s", package.id, source.name, e.message)
                    failures[f"{package.id}/{source.name}"] = e.message
                    continue
                count += 1

        if failures:
            raise ConfigError(
                kind="source_verification_failed",
                message=f"{len(failures)} source(s) failed verification",
                details=failures,
            )
        logger.debug("Verified %d source(s) in %s", count, self.root)
        return count
