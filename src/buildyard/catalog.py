# catalog.py
from __future__ import annotations

import logging
import tomllib
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional

from .config import PhaseVocabulary
from .errors import ConfigError, GraphError
from .model import SOURCE_HASH_TYPES, Dependency, PackageId, PackageSource, PackageSpec

logger = logging.getLogger(__name__)

PKG_FILE = "pkg.toml"

_KNOWN_KEYS = {
    "name",
    "version",
    "image",
    "script",
    "script_file",
    "phases",
    "dependencies",
    "environment",
    "allowed_images",
    "denied_images",
    "outputs",
    "sources",
}


# ----------------------------------------------------------------------
# Normalization
# ----------------------------------------------------------------------

def parse_dependency(raw: Any) -> Dependency:
    """
    Accepts:
      - "zlib"              (any single version)
      - "zlib 1.3"          (exact version)
      - {"name": "zlib", "version": "1.3"}
    """
    if isinstance(raw, Dependency):
        return raw
    if isinstance(raw, Mapping):
        name = str(raw.get("name", "")).strip()
        version = raw.get("version")
        version = str(version).strip() if version is not None else None
    elif isinstance(raw, str):
        parts = raw.split()
        if len(parts) not in (1, 2):
            raise ConfigError(kind="invalid_dependency", message=f"Cannot parse dependency: {raw!r}")
        name = parts[0]
        version = parts[1] if len(parts) == 2 else None
    else:
        raise ConfigError(kind="invalid_dependency", message=f"Cannot parse dependency: {raw!r}")
    if not name:
        raise ConfigError(kind="invalid_dependency", message=f"Dependency without a name: {raw!r}")
    return Dependency(name=name, version=version or None)


def _str_tuple(value: Any, *, field: str, owner: str) -> tuple[str, ...]:
    if isinstance(value, str) or not isinstance(value, Iterable):
        raise ConfigError(kind="invalid_package", message=f"{owner}: '{field}' must be a list of strings")
    return tuple(str(v) for v in value)


def parse_sources(raw: Any, *, owner: str) -> tuple[PackageSource, ...]:
    """
    The `sources` table of a package:

      [sources.src]
      url = "https://zlib.net/zlib-1.3.tar.gz"
      hash = { type = "sha256", hash = "ff0ba4c2..." }
      download_manually = false
    """
    if not isinstance(raw, Mapping):
        raise ConfigError(kind="invalid_package", message=f"{owner}: 'sources' must be a table")

    sources = []
    for name, entry in sorted(raw.items()):
        where = f"{owner}: source '{name}'"
        if not isinstance(entry, Mapping) or not entry.get("url"):
            raise ConfigError(kind="invalid_package", message=f"{where} needs a url")
        digest = entry.get("hash")
        if not isinstance(digest, Mapping) or not digest.get("hash"):
            raise ConfigError(kind="invalid_package", message=f"{where} needs a hash table with type and hash")
        hash_type = str(digest.get("type", "sha256")).lower()
        if hash_type not in SOURCE_HASH_TYPES:
            raise ConfigError(
                kind="invalid_package",
                message=f"{where}: unsupported hash type {hash_type!r}",
                details={"supported": list(SOURCE_HASH_TYPES)},
            )
        sources.append(
            PackageSource(
                name=str(name),
                url=str(entry["url"]),
                hash_type=hash_type,
                hash=str(digest["hash"]).lower(),
                download_manually=bool(entry.get("download_manually", False)),
            )
        )
    return tuple(sources)


def spec_from_dict(
    data: Mapping[str, Any],
    vocabulary: PhaseVocabulary,
    *,
    base_dir: Path | None = None,
) -> PackageSpec:
    """Normalize one package definition into an immutable PackageSpec."""
    unknown = sorted(set(data) - _KNOWN_KEYS)
    owner = f"{data.get('name', '<unnamed>')} {data.get('version', '?')}"
    if unknown:
        raise ConfigError(kind="invalid_package", message=f"{owner}: unknown keys {unknown}")

    for key in ("name", "version", "image"):
        if not data.get(key):
            raise ConfigError(kind="invalid_package", message=f"{owner}: missing '{key}'")

    script = data.get("script")
    script_file = data.get("script_file")
    if script is None and script_file is not None:
        p = Path(script_file)
        if base_dir is not None and not p.is_absolute():
            p = base_dir / p
        if not p.exists():
            raise ConfigError(kind="invalid_package", message=f"{owner}: script_file not found: {p}")
        script = p.read_text(encoding="utf-8")
    if script is None:
        raise ConfigError(kind="invalid_package", message=f"{owner}: missing 'script' or 'script_file'")

    phases = data.get("phases")
    if phases is None:
        phases = list(vocabulary)
    phases = vocabulary.validate(_str_tuple(phases, field="phases", owner=owner), owner=owner)
    if not phases:
        raise ConfigError(kind="invalid_package", message=f"{owner}: empty phase list")

    env = data.get("environment") or {}
    if not isinstance(env, Mapping):
        raise ConfigError(kind="invalid_package", message=f"{owner}: 'environment' must be a table")

    allowed = data.get("allowed_images")
    denied = data.get("denied_images")

    return PackageSpec(
        name=str(data["name"]),
        version=str(data["version"]),
        image=str(data["image"]),
        script=str(script),
        phases=phases,
        dependencies=tuple(parse_dependency(d) for d in data.get("dependencies") or []),
        environment={str(k): str(v) for k, v in env.items()},
        allowed_images=_str_tuple(allowed, field="allowed_images", owner=owner) if allowed is not None else None,
        denied_images=_str_tuple(denied, field="denied_images", owner=owner) if denied is not None else None,
        outputs=_str_tuple(data.get("outputs") or [], field="outputs", owner=owner),
        sources=parse_sources(data.get("sources") or {}, owner=owner),
    )


# ----------------------------------------------------------------------
# Catalog
# ----------------------------------------------------------------------

class PackageCatalog:
    """
    In-memory view of every known PackageSpec, keyed by (name, version).
    """

    def __init__(self, specs: Iterable[PackageSpec] = ()):
        self._by_id: Dict[PackageId, PackageSpec] = {}
        self._by_name: Dict[str, List[PackageSpec]] = {}
        for spec in specs:
            self.add(spec)

    def add(self, spec: PackageSpec) -> None:
        if spec.id in self._by_id:
            raise GraphError(
                kind=GraphError.DUPLICATE_PACKAGE,
                message=f"Package defined twice: {spec.id}",
            )
        self._by_id[spec.id] = spec
        self._by_name.setdefault(spec.name, []).append(spec)
        self._by_name[spec.name].sort(key=lambda s: s.version)

    def __len__(self) -> int:
        return len(self._by_id)

    def __iter__(self) -> Iterator[PackageSpec]:
        return iter(sorted(self._by_id.values(), key=lambda s: (s.name, s.version)))

    def __contains__(self, pkg_id: PackageId) -> bool:
        return pkg_id in self._by_id

    def get(self, pkg_id: PackageId) -> Optional[PackageSpec]:
        return self._by_id.get(pkg_id)

    def find(self, name: str, version: str) -> Optional[PackageSpec]:
        return self._by_id.get(PackageId(name, version))

    def find_by_name(self, name: str) -> List[PackageSpec]:
        return list(self._by_name.get(name, []))

    # ---- constructors ----

    @classmethod
    def from_dicts(cls, items: Iterable[Mapping[str, Any]], vocabulary: PhaseVocabulary) -> PackageCatalog:
        return cls(spec_from_dict(d, vocabulary) for d in items)

    @classmethod
    def load(cls, root: str | Path, vocabulary: PhaseVocabulary) -> PackageCatalog:
        """
        Load a package repository: a directory tree of pkg.toml files.

        pkg.toml files are layered: a file in a parent directory provides
        defaults for every package below it. Only directories without
        pkg.toml-carrying subdirectories define packages.
        """
        root_p = Path(root).expanduser().resolve()
        if not root_p.is_dir():
            raise ConfigError(kind="repository_not_found", message=f"Package repository not found: {root_p}")

        pkg_dirs = sorted(p.parent for p in root_p.rglob(PKG_FILE))
        leaves = [d for d in pkg_dirs if not any(o != d and d in o.parents for o in pkg_dirs)]

        catalog = cls()
        for leaf in leaves:
            merged: Dict[str, Any] = {}
            layers = [d for d in reversed(leaf.parents) if d == root_p or root_p in d.parents] + [leaf]
            for d in layers:
                f = d / PKG_FILE
                if f.exists():
                    merged.update(_read_pkg_file(f))
            catalog.add(spec_from_dict(merged, vocabulary, base_dir=leaf))
            logger.debug("Loaded package %s %s from %s", merged.get("name"), merged.get("version"), leaf)

        logger.info("Loaded %d package(s) from %s", len(catalog), root_p)
        return catalog


def _read_pkg_file(path: Path) -> Dict[str, Any]:
    try:
        return tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(kind="invalid_package", message=f"{path}: {e}") from e
