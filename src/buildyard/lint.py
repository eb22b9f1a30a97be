# lint.py
from __future__ import annotations

import logging
import shlex
import subprocess
from typing import Dict, List, Mapping

from .dag import BuildGraph
from .errors import BuildError, ConfigError
from .executor import ContainerExecutor

logger = logging.getLogger(__name__)

LINT_TIMEOUT = 60.0


def _linter_command(linter: str) -> List[str]:
    cmd = shlex.split(linter)
    if not cmd:
        raise ConfigError(kind="linter_unavailable", message="script_linter is empty")
    return cmd


def lint_script(cmd: List[str], script: str) -> str | None:
    """Run the linter with the script on stdin. Returns its output on failure, None when clean."""
    try:
        proc = subprocess.run(
            cmd,
            shell=False,
            input=script,
            text=True,
            capture_output=True,
            timeout=LINT_TIMEOUT,
        )
    except FileNotFoundError as e:
        raise ConfigError(
            kind="linter_unavailable",
            message=f"{cmd[0]} is not available",
            details={"hint": f"Install {cmd[0]} or fix script_linter in the configuration."},
        ) from e
    except subprocess.TimeoutExpired:
        return f"linter did not finish within {LINT_TIMEOUT:g}s"

    if proc.returncode != 0:
        return (proc.stdout + proc.stderr).strip() or f"exit code {proc.returncode}"
    return None


def lint_graph(graph: BuildGraph, executor: ContainerExecutor, linter: str, extra_env: Mapping[str, str] | None = None) -> int:
    """
    Lint the rendered script of every phase of every job in the graph.

    Scripts that do not render are left to fail their own job at run time.
    Raises ConfigError (lint_failed) listing every failing script.
    """
    cmd = _linter_command(linter)
    failures: Dict[str, str] = {}
    count = 0
    for i, job in enumerate(graph.nodes):
        spec = job.spec
        dependencies = [str(graph.nodes[d].id) for d in graph.deps[i]]
        try:
            image = executor.resolve_image(spec)
            env = executor.build_environment(spec, extra_env)
        except BuildError as e:
            logger.debug("[%s] not linted: %s", spec.id, e.message)
            continue
        for phase in spec.phases:
            try:
                script = executor.render(spec, phase, image, env, dependencies)
            except BuildError as e:
                logger.debug("[%s] %s not linted: %s", spec.id, phase, e.message)
                continue
            count += 1
            output = lint_script(cmd, script)
            if output is not None:
                logger.error("[%s] %s: lint failed\n%s", spec.id, phase, output)
                failures[f"{spec.id} ({phase})"] = output.splitlines()[0] if output else ""

    if failures:
        raise ConfigError(
            kind="lint_failed",
            message=f"{len(failures)} script(s) failed linting",
            details=failures,
        )
    logger.info("Linted %d script(s) with %s", count, cmd[0])
    return count
