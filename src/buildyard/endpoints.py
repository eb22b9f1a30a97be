# endpoints.py
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, Collection, Dict, Iterable, List, Optional

from .config import Configuration, EndpointConfig
from .docker import ContainerRuntime, DockerCliRuntime
from .errors import EndpointError, RunAborted

logger = logging.getLogger(__name__)

RuntimeFactory = Callable[[str, EndpointConfig], ContainerRuntime]


def docker_cli_factory(name: str, cfg: EndpointConfig) -> ContainerRuntime:
    return DockerCliRuntime(cfg.uri, cfg.endpoint_type)


@dataclass(eq=False)
class Endpoint:
    """A container endpoint and its live load. Counters are guarded by the pool."""
    name: str
    uri: str
    endpoint_type: str
    maxjobs: int
    runtime: ContainerRuntime
    speed: int = 1
    in_flight: int = 0
    peak_in_flight: int = 0
    dispatched: int = 0
    available: bool = True
    unavailable_reason: str | None = None
    _image_cache: Dict[str, bool] = field(default_factory=dict, repr=False)

    @property
    def spare(self) -> int:
        return self.maxjobs - self.in_flight

    @property
    def spare_fraction(self) -> float:
        return self.spare / self.maxjobs


class EndpointPool:
    """
    Configured endpoints plus a capacity counter per endpoint.

    acquire() reserves one slot (blocking while every usable endpoint is
    full); release() gives it back and wakes waiters.
    """

    def __init__(self, endpoints: Iterable[Endpoint], *, poll_interval: float = 0.5):
        self._endpoints: List[Endpoint] = sorted(endpoints, key=lambda e: e.name)
        if not self._endpoints:
            raise EndpointError(kind="no_endpoints", message="No endpoints configured")
        names = [e.name for e in self._endpoints]
        if len(set(names)) != len(names):
            raise EndpointError(kind="duplicate_endpoint", message=f"Duplicate endpoint names: {names}")
        self._cond = threading.Condition()
        self._cursor = 0
        self.poll_interval = poll_interval

    @classmethod
    def from_config(cls, config: Configuration, factory: RuntimeFactory = docker_cli_factory) -> EndpointPool:
        return cls(
            Endpoint(
                name=name,
                uri=ep.uri,
                endpoint_type=ep.endpoint_type,
                maxjobs=ep.maxjobs,
                speed=ep.speed,
                runtime=factory(name, ep),
            )
            for name, ep in config.docker.endpoints.items()
        )

    def __iter__(self):
        return iter(list(self._endpoints))

    def __len__(self) -> int:
        return len(self._endpoints)

    def get(self, name: str) -> Endpoint:
        for e in self._endpoints:
            if e.name == name:
                return e
        raise KeyError(name)

    @property
    def total_capacity(self) -> int:
        return sum(e.maxjobs for e in self._endpoints if e.available)

    # ---- slot management ----

    def _select(self, exclude: Collection[str]) -> Optional[Endpoint]:
        n = len(self._endpoints)
        best: Optional[Endpoint] = None
        best_pos = 0
        for offset in range(n):
            pos = (self._cursor + offset) % n
            e = self._endpoints[pos]
            if not e.available or e.name in exclude or e.spare <= 0:
                continue
            # strict '>' keeps the first candidate in cursor order on ties
            if best is None or e.spare_fraction > best.spare_fraction:
                best, best_pos = e, pos
        if best is not None:
            self._cursor = (best_pos + 1) % n
        return best

    def acquire(self, *, exclude: Collection[str] = (), cancel: threading.Event | None = None) -> Endpoint:
        """
        Reserve a slot on the endpoint with the largest fraction of spare
        capacity (round-robin among ties).

        Raises:
          EndpointError  no usable endpoint is left (all unavailable or excluded)
          RunAborted     `cancel` was set while waiting
        """
        with self._cond:
            while True:
                if cancel is not None and cancel.is_set():
                    raise RunAborted(kind="aborted", message="Run aborted while waiting for an endpoint")

                usable = [e for e in self._endpoints if e.available and e.name not in exclude]
                if not usable:
                    raise EndpointError(
                        kind="no_endpoint_available",
                        message="No reachable endpoint left to run on",
                        details={
                            "excluded": sorted(exclude),
                            "unavailable": sorted(e.name for e in self._endpoints if not e.available),
                        },
                    )

                chosen = self._select(exclude)
                if chosen is not None:
                    chosen.in_flight += 1
                    chosen.dispatched += 1
                    chosen.peak_in_flight = max(chosen.peak_in_flight, chosen.in_flight)
                    logger.debug("Acquired slot on %s (%d/%d)", chosen.name, chosen.in_flight, chosen.maxjobs)
                    return chosen

                self._cond.wait(timeout=self.poll_interval)

    def release(self, endpoint: Endpoint) -> None:
        with self._cond:
            if endpoint.in_flight <= 0:
                raise RuntimeError(f"release() without acquire() on endpoint {endpoint.name}")
            endpoint.in_flight -= 1
            logger.debug("Released slot on %s (%d/%d)", endpoint.name, endpoint.in_flight, endpoint.maxjobs)
            self._cond.notify_all()

    def mark_unavailable(self, endpoint: Endpoint, reason: str) -> None:
        with self._cond:
            if endpoint.available:
                endpoint.available = False
                endpoint.unavailable_reason = reason
                logger.warning("Endpoint %s marked unavailable for this run: %s", endpoint.name, reason)
            self._cond.notify_all()

    def wake(self) -> None:
        """Wake every waiter so it can re-check its cancel event."""
        with self._cond:
            self._cond.notify_all()

    # ---- health ----

    def probe(self) -> List[str]:
        """Ping every endpoint once. Returns the names of reachable endpoints."""
        reachable: List[str] = []
        for e in self._endpoints:
            try:
                e.runtime.ping()
            except EndpointError as err:
                self.mark_unavailable(e, err.message)
                continue
            reachable.append(e.name)
        return reachable

    def has_image(self, endpoint: Endpoint, image: str) -> bool:
        """Endpoint-side image presence, checked once per endpoint and image."""
        with self._cond:
            cached = endpoint._image_cache.get(image)
        if cached is not None:
            return cached
        present = endpoint.runtime.has_image(image)
        with self._cond:
            endpoint._image_cache[image] = present
        return present
