# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict


@dataclass(eq=False)
class BuildError(Exception):
    """
    Structured build error with enough context for:
      - clean CLI output
      - the run summary (kind + message per failed job)
      - the build log (error_kind / error_message columns)
    """
    kind: str
    message: str
    details: Dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


# ----------------------------------------------------------------------
# Fatal, pre-run
# ----------------------------------------------------------------------

class ConfigError(BuildError):
    """Malformed or contradictory settings."""


class GraphError(BuildError):
    """UnknownDependency / CycleDetected and friends."""

    UNKNOWN_DEPENDENCY = "unknown_dependency"
    CYCLE_DETECTED = "cycle_detected"
    UNKNOWN_TARGET = "unknown_target"
    AMBIGUOUS_TARGET = "ambiguous_target"
    DUPLICATE_PACKAGE = "duplicate_package"


# ----------------------------------------------------------------------
# Job-scoped
# ----------------------------------------------------------------------

class EndpointError(BuildError):
    """Unreachable or misbehaving endpoint. Retried on another endpoint."""


class ImageNotAllowed(BuildError):
    pass


class TemplateError(BuildError):
    pass


class PhaseFailed(BuildError):
    """Non-zero exit (or an ERR state marker) inside the container."""


class PhaseTimeout(BuildError):
    pass


class ArtifactError(BuildError):
    pass


# ----------------------------------------------------------------------
# Non-fatal / control flow
# ----------------------------------------------------------------------

class LogRepositoryError(BuildError):
    """Best-effort audit trail failed. Never fails a build."""


class RunAborted(BuildError):
    pass


def error_kind(exc: BaseException) -> str:
    if isinstance(exc, BuildError):
        return exc.kind
    return type(exc).__name__


def error_message(exc: BaseException) -> str:
    if isinstance(exc, BuildError):
        return exc.message
    return str(exc)
