from .catalog import PackageCatalog
from .config import Configuration, load_configuration
from .dag import BuildGraph, build_graph
from .errors import BuildError
from .model import JobState, PackageId, PackageSpec, RunOutcome, RunSummary
from .scheduler import Scheduler, prepare_run, run_build

__all__ = [
    "BuildError",
    "BuildGraph",
    "Configuration",
    "JobState",
    "PackageCatalog",
    "PackageId",
    "PackageSpec",
    "RunOutcome",
    "RunSummary",
    "Scheduler",
    "build_graph",
    "load_configuration",
    "prepare_run",
    "run_build",
]
