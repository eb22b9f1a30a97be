# dag.py
from __future__ import annotations

import logging
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Sequence, Set, Tuple

from .catalog import PackageCatalog
from .errors import GraphError
from .model import BuildJob, Dependency, PackageId, PackageSpec

logger = logging.getLogger(__name__)


@dataclass
class BuildGraph:
    """
    Arena of BuildJob nodes addressed by integer index.

      nodes[i]       -> BuildJob
      deps[i]        -> indices that must succeed BEFORE i
      dependents[i]  -> indices that wait on i
      levels         -> topological levels; each level can run in parallel
    """
    nodes: List[BuildJob]
    deps: List[List[int]]
    dependents: List[List[int]]
    levels: List[List[int]]
    targets: List[int] = field(default_factory=list)
    _index: Dict[PackageId, int] = field(default_factory=dict, repr=False)

    def __len__(self) -> int:
        return len(self.nodes)

    def __iter__(self):
        return iter(self.nodes)

    def index_of(self, pkg_id: PackageId) -> int:
        return self._index[pkg_id]

    def job(self, pkg_id: PackageId) -> BuildJob:
        return self.nodes[self._index[pkg_id]]

    @property
    def order(self) -> List[int]:
        return [i for level in self.levels for i in level]

    def transitive_dependents(self, index: int) -> List[int]:
        seen: Set[int] = set()
        q = deque(self.dependents[index])
        while q:
            i = q.popleft()
            if i in seen:
                continue
            seen.add(i)
            q.extend(self.dependents[i])
        return sorted(seen, key=lambda i: _sort_key(self.nodes[i].spec))

    def transitive_dependencies(self, index: int) -> List[int]:
        seen: Set[int] = set()
        q = deque(self.deps[index])
        while q:
            i = q.popleft()
            if i in seen:
                continue
            seen.add(i)
            q.extend(self.deps[i])
        return sorted(seen, key=lambda i: _sort_key(self.nodes[i].spec))


def _sort_key(spec: PackageSpec) -> Tuple[str, str]:
    return (spec.name, spec.version)


# ----------------------------------------------------------------------
# Resolution
# ----------------------------------------------------------------------

def resolve_dependency(catalog: PackageCatalog, dep: Dependency, *, owner: PackageSpec) -> PackageSpec:
    if dep.version is not None:
        spec = catalog.find(dep.name, dep.version)
        if spec is None:
            known = [s.version for s in catalog.find_by_name(dep.name)]
            raise GraphError(
                kind=GraphError.UNKNOWN_DEPENDENCY,
                message=f"Package '{owner.id}' depends on missing package '{dep}'",
                details={"package": str(owner.id), "dependency": str(dep), "known_versions": known},
            )
        return spec

    candidates = catalog.find_by_name(dep.name)
    if len(candidates) == 1:
        return candidates[0]
    if not candidates:
        raise GraphError(
            kind=GraphError.UNKNOWN_DEPENDENCY,
            message=f"Package '{owner.id}' depends on missing package '{dep.name}'",
            details={"package": str(owner.id), "dependency": dep.name},
        )
    raise GraphError(
        kind=GraphError.UNKNOWN_DEPENDENCY,
        message=f"Package '{owner.id}' depends on '{dep.name}' without a version, "
                f"but {len(candidates)} versions exist",
        details={"package": str(owner.id), "known_versions": [s.version for s in candidates]},
    )


def resolve_target(catalog: PackageCatalog, target: str | PackageId | Tuple[str, str | None]) -> PackageSpec:
    """
    A target is a package name, "name version", a (name, version) tuple or a PackageId.
    """
    if isinstance(target, PackageId):
        name, version = target.name, target.version
    elif isinstance(target, tuple):
        name, version = target
    else:
        parts = str(target).split()
        name = parts[0] if parts else ""
        version = parts[1] if len(parts) > 1 else None

    if version is not None:
        spec = catalog.find(name, version)
        if spec is None:
            raise GraphError(kind=GraphError.UNKNOWN_TARGET, message=f"No package {name} {version}")
        return spec

    candidates = catalog.find_by_name(name)
    if not candidates:
        raise GraphError(kind=GraphError.UNKNOWN_TARGET, message=f"No package named {name!r}")
    if len(candidates) > 1:
        raise GraphError(
            kind=GraphError.AMBIGUOUS_TARGET,
            message=f"Found multiple packages named {name!r}. Cannot decide which one to build",
            details={"versions": [s.version for s in candidates]},
        )
    return candidates[0]


# ----------------------------------------------------------------------
# Graph construction
# ----------------------------------------------------------------------

def build_graph(
    catalog: PackageCatalog,
    targets: Sequence[str | PackageId | Tuple[str, str | None]] | None = None,
) -> BuildGraph:
    """
    Build a BuildGraph for `targets` and everything they transitively depend on.
    With no targets, the whole catalog is built.

    Raises GraphError on unknown dependencies/targets and on cycles, before any
    job exists outside this function.
    """
    if targets:
        roots = [resolve_target(catalog, t) for t in targets]
    else:
        roots = list(catalog)

    # collect the closure, resolving every dependency edge once
    specs: Dict[PackageId, PackageSpec] = {}
    edges: Dict[PackageId, List[PackageId]] = {}
    stack = list(roots)
    while stack:
        spec = stack.pop()
        if spec.id in specs:
            continue
        specs[spec.id] = spec
        resolved = [resolve_dependency(catalog, d, owner=spec) for d in spec.dependencies]
        edges[spec.id] = sorted({r.id for r in resolved})
        stack.extend(r for r in resolved if r.id not in specs)

    ordered = sorted(specs.values(), key=_sort_key)
    index = {s.id: i for i, s in enumerate(ordered)}
    deps: List[List[int]] = [[index[d] for d in edges[s.id]] for s in ordered]
    dependents: List[List[int]] = [[] for _ in ordered]
    for i, ds in enumerate(deps):
        for d in ds:
            dependents[d].append(i)

    levels = topo_levels(deps, dependents, names=[str(s.id) for s in ordered])

    nodes = [BuildJob(index=i, spec=s, uuid=str(uuid.uuid4())) for i, s in enumerate(ordered)]
    graph = BuildGraph(
        nodes=nodes,
        deps=deps,
        dependents=dependents,
        levels=levels,
        targets=sorted({index[r.id] for r in roots}),
        _index=index,
    )
    logger.debug("Build graph: %d job(s) in %d level(s)", len(nodes), len(levels))
    return graph


def topo_levels(
    deps: List[List[int]],
    dependents: List[List[int]],
    *,
    names: List[str] | None = None,
) -> List[List[int]]:
    """
    Kahn-style in-degree reduction into topological levels.
    Each level only depends on earlier levels.
    """
    indeg = [len(d) for d in deps]
    q = deque(i for i, d in enumerate(indeg) if d == 0)

    levels: List[List[int]] = []
    processed = 0

    while q:
        level_size = len(q)
        level: List[int] = []

        for _ in range(level_size):
            node = q.popleft()
            level.append(node)
            processed += 1

        level.sort()
        for node in level:
            for child in sorted(dependents[node]):
                indeg[child] -= 1
                if indeg[child] == 0:
                    q.append(child)

        levels.append(level)

    if processed != len(indeg):
        stuck = [i for i, d in enumerate(indeg) if d > 0]
        implicated = _cycle_members(stuck, deps)
        labels = sorted((names[i] if names else str(i)) for i in implicated)
        raise GraphError(
            kind=GraphError.CYCLE_DETECTED,
            message=f"Dependency cycle between: {', '.join(labels)}",
            details={"packages": labels},
        )

    return levels


def _cycle_members(stuck: Iterable[int], deps: List[List[int]]) -> Set[int]:
    """
    Nodes left over by Kahn's algorithm are either on a cycle or downstream of
    one. Keep only those that can reach themselves.
    """
    stuck_set = set(stuck)
    members: Set[int] = set()
    for start in stuck_set:
        seen: Set[int] = set()
        q = deque(d for d in deps[start] if d in stuck_set)
        while q:
            i = q.popleft()
            if i == start:
                members.add(start)
                break
            if i in seen:
                continue
            seen.add(i)
            q.extend(d for d in deps[i] if d in stuck_set)
    return members or stuck_set
