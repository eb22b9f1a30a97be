# config.py
from __future__ import annotations

import os
import tomllib
from pathlib import Path
from typing import Dict, List, Literal, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .errors import ConfigError

ENV_PREFIX = "BUILDYARD_"


class _Model(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


class ImageConfig(_Model):
    name: str
    short_name: str


class EndpointConfig(_Model):
    uri: str
    endpoint_type: Literal["http", "socket"]
    speed: int = 1  # stored, not used for scheduling
    maxjobs: int = Field(default=1, ge=1)


class DockerConfig(_Model):
    images: List[ImageConfig] = Field(default_factory=list)
    verify_images_present: bool = False
    endpoints: Dict[str, EndpointConfig]

    @field_validator("images")
    @classmethod
    def _unique_images(cls, images: List[ImageConfig]) -> List[ImageConfig]:
        names = [i.name for i in images]
        if len(set(names)) != len(names):
            dupes = sorted({n for n in names if names.count(n) > 1})
            raise ValueError(f"duplicate images: {dupes}")
        return images

    @field_validator("endpoints")
    @classmethod
    def _some_endpoints(cls, endpoints: Dict[str, EndpointConfig]) -> Dict[str, EndpointConfig]:
        if not endpoints:
            raise ValueError("at least one endpoint must be configured")
        return endpoints

    def image_names(self) -> List[str]:
        return [i.name for i in self.images]

    def resolve_image(self, name_or_short: str) -> str | None:
        """Map a configured image name or short name to its full name."""
        for img in self.images:
            if name_or_short in (img.name, img.short_name):
                return img.name
        return None


class ContainersConfig(_Model):
    check_env_names: bool = True
    allowed_env: List[str] = Field(default_factory=list)
    # False: drop disallowed variables with a warning; True: ConfigError
    reject_disallowed_env: bool = False
    output_dir: str = "/outputs"
    input_dir: str = "/inputs"
    script_path: str = "/script"


class PhaseVocabulary:
    """
    The configured, ordered set of legal phase names.
    A package's phase list must be a subsequence of it.
    """

    def __init__(self, phases: Sequence[str]):
        self.phases = tuple(phases)
        self._pos = {p: i for i, p in enumerate(self.phases)}

    def __contains__(self, phase: str) -> bool:
        return phase in self._pos

    def __iter__(self):
        return iter(self.phases)

    def __len__(self) -> int:
        return len(self.phases)

    def __repr__(self) -> str:
        return f"PhaseVocabulary({list(self.phases)!r})"

    def validate(self, phases: Sequence[str], *, owner: str = "") -> tuple[str, ...]:
        unknown = [p for p in phases if p not in self._pos]
        if unknown:
            raise ConfigError(
                kind="unknown_phase",
                message=f"{owner or 'package'} uses phases not in available_phases: {unknown}",
                details={"available_phases": list(self.phases)},
            )
        positions = [self._pos[p] for p in phases]
        if positions != sorted(set(positions)):
            raise ConfigError(
                kind="phase_order",
                message=f"{owner or 'package'} phases {list(phases)} are not a subsequence of available_phases",
                details={"available_phases": list(self.phases)},
            )
        return tuple(phases)

    @property
    def last(self) -> str:
        return self.phases[-1]


class Configuration(_Model):
    compatibility: str | None = None

    releases_root: Path
    release_stores: List[str] = Field(default_factory=lambda: ["default"])
    staging: Path
    source_cache: Path
    log_dir: Path

    database_host: str = "localhost"
    database_port: int = 5432
    database_user: str = "buildyard"
    database_password: str = ""
    database_name: str = "buildyard"
    database_driver: str = "postgresql+psycopg"
    # full SQLAlchemy URL, wins over the fields above
    database_url: str | None = None

    available_phases: List[str]
    shebang: str = "#!/bin/bash"
    strict_script_interpolation: bool = True
    phase_timeout: Optional[float] = Field(default=None, gt=0)
    build_error_lines: int = Field(default=10, ge=0)
    # command that gets each rendered script on stdin, non-zero exit = lint failure
    script_linter: str | None = None

    docker: DockerConfig
    containers: ContainersConfig = Field(default_factory=ContainersConfig)

    @field_validator("available_phases")
    @classmethod
    def _phases(cls, phases: List[str]) -> List[str]:
        if not phases:
            raise ValueError("available_phases must not be empty")
        if len(set(phases)) != len(phases):
            raise ValueError(f"available_phases contains duplicates: {phases}")
        return phases

    @field_validator("release_stores")
    @classmethod
    def _stores(cls, stores: List[str]) -> List[str]:
        if not stores:
            raise ValueError("at least one release store must be configured")
        if len(set(stores)) != len(stores):
            raise ValueError(f"release_stores contains duplicates: {stores}")
        for s in stores:
            if not s or "/" in s or s in (".", ".."):
                raise ValueError(f"invalid release store name: {s!r}")
        return stores

    @model_validator(mode="after")
    def _env_consistency(self) -> Configuration:
        if self.containers.reject_disallowed_env and not self.containers.check_env_names:
            raise ValueError("containers.reject_disallowed_env requires containers.check_env_names")
        return self

    @property
    def phase_vocabulary(self) -> PhaseVocabulary:
        return PhaseVocabulary(self.available_phases)

    def release_store_roots(self) -> Dict[str, Path]:
        return {name: self.releases_root / name for name in self.release_stores}

    def database_uri(self) -> str:
        if self.database_url:
            return self.database_url
        auth = self.database_user
        if self.database_password:
            auth = f"{auth}:{self.database_password}"
        return (
            f"{self.database_driver}://{auth}@{self.database_host}:"
            f"{self.database_port}/{self.database_name}"
        )


# ----------------------------------------------------------------------
# Loading
# ----------------------------------------------------------------------

def configuration_from_dict(data: dict) -> Configuration:
    try:
        return Configuration.model_validate(data)
    except ValidationError as e:
        raise ConfigError(
            kind="invalid_configuration",
            message=f"{e.error_count()} configuration error(s)",
            details={
                ".".join(str(p) for p in err["loc"]) or "<root>": err["msg"]
                for err in e.errors()
            },
        ) from e


def _env_overrides(environ: Dict[str, str]) -> Dict[str, str]:
    """BUILDYARD_DATABASE_HOST=db -> {"database_host": "db"} (top-level scalars only)."""
    scalar_keys = {
        name
        for name, f in Configuration.model_fields.items()
        if name not in ("docker", "containers", "available_phases", "release_stores")
    }
    out: Dict[str, str] = {}
    for key, value in environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        name = key[len(ENV_PREFIX):].lower()
        if name in scalar_keys:
            out[name] = value
    return out


def load_configuration(path: str | Path, environ: Dict[str, str] | None = None) -> Configuration:
    """
    Load a TOML configuration file and apply BUILDYARD_* environment overrides.
    """
    p = Path(path).expanduser()
    if not p.exists():
        raise ConfigError(kind="config_not_found", message=f"Configuration file not found: {p}")
    try:
        data = tomllib.loads(p.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(kind="config_syntax", message=f"{p}: {e}") from e

    data.update(_env_overrides(dict(os.environ if environ is None else environ)))
    return configuration_from_dict(data)
