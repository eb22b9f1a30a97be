# script.py
from __future__ import annotations

from typing import Any, Dict, Mapping, Sequence

import jinja2

from .errors import TemplateError
from .logparse import phase_marker, progress_marker, state_marker
from .model import PackageSpec


def _environment(strict: bool) -> jinja2.Environment:
    env = jinja2.Environment(
        undefined=jinja2.StrictUndefined if strict else jinja2.ChainableUndefined,
        keep_trailing_newline=True,
        autoescape=False,
    )
    env.globals.update(
        phase_marker=phase_marker,
        progress=progress_marker,
        state=state_marker,
    )
    return env


def script_context(
    spec: PackageSpec,
    *,
    phase: str,
    image: str,
    env: Mapping[str, str],
    dependencies: Sequence[str] = (),
    extra: Mapping[str, Any] | None = None,
) -> Dict[str, Any]:
    """Variables a build script template can reference."""
    ctx: Dict[str, Any] = {
        "package": {
            "name": spec.name,
            "version": spec.version,
            "dependencies": list(dependencies),
            "phases": list(spec.phases),
        },
        "phase": phase,
        "phases": list(spec.phases),
        "image": image,
        "env": dict(env),
    }
    if extra:
        ctx.update(extra)
    return ctx


def render_script(template: str, context: Mapping[str, Any], *, strict: bool, owner: str = "") -> str:
    """
    Render a build script template.

    With strict=True any reference to an undefined variable raises
    TemplateError; otherwise undefined references render as empty strings.
    """
    env = _environment(strict)
    try:
        tmpl = env.from_string(template)
    except jinja2.TemplateSyntaxError as e:
        raise TemplateError(
            kind="template_syntax",
            message=f"{owner or 'script'}: {e.message} (line {e.lineno})",
        ) from e
    try:
        return tmpl.render(**context)
    except jinja2.UndefinedError as e:
        raise TemplateError(
            kind="undefined_variable",
            message=f"{owner or 'script'}: {e.message}",
            details={"strict": strict},
        ) from e
