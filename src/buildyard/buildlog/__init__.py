from .repository import (
    ArtifactView,
    BuildLogRepository,
    CachedBuild,
    JobView,
    PhaseView,
    ReleaseView,
    SqlBuildLogRepository,
    SubmitView,
)

__all__ = [
    "ArtifactView",
    "BuildLogRepository",
    "CachedBuild",
    "JobView",
    "PhaseView",
    "ReleaseView",
    "SqlBuildLogRepository",
    "SubmitView",
]
