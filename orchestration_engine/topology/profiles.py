# orchestration_engine/topology/profiles.py
"""Profile gate - filters a topology down to the services of a run context."""

import logging
from dataclasses import replace
from typing import Iterable, Set

from orchestration_engine.core.errors import ConfigError
from orchestration_engine.core.models import Profile, Topology
from orchestration_engine.topology.loader import validate_topology

logger = logging.getLogger(__name__)


def parse_profiles(names: Iterable[str]) -> Set[Profile]:
    """Convert profile names to the enum, rejecting unknown names."""
    profiles = set()
    for name in names:
        try:
            profiles.add(Profile(name.strip().lower()))
        except ValueError:
            valid = ", ".join(p.value for p in Profile)
            raise ConfigError(f"Unknown profile '{name}' (expected one of: {valid})")
    return profiles


def effective_profiles(
    active_profiles: Iterable[Profile],
    excluded: Iterable[Profile] = (),
) -> Set[Profile]:
    """The default profile is always active unless explicitly excluded."""
    excluded = set(excluded)
    return ({Profile.DEFAULT} | set(active_profiles)) - excluded


def is_selected(profile: Profile, active: Set[Profile]) -> bool:
    return profile in active


def select(
    topology: Topology,
    active_profiles: Iterable[Profile],
    excluded: Iterable[Profile] = (),
) -> Topology:
    """
    Return the subtopology active for the given profiles.

    Routes whose target is not selected are dropped. A selected service
    depending on an unselected one is a configuration error: run contexts
    must be closed under their dependencies.

    Raises:
        ConfigError: if the selection is not dependency-closed
    """
    active = effective_profiles(active_profiles, excluded)

    services = {
        name: spec
        for name, spec in topology.services.items()
        if is_selected(spec.profile, active)
    }

    for name, spec in services.items():
        outside = sorted(dep for dep in spec.depends_on if dep not in services)
        if outside:
            details = ", ".join(
                f"{dep} ({topology.services[dep].profile.value})" for dep in outside
            )
            raise ConfigError(
                f"Service '{name}' depends on service(s) outside the active profiles: {details}"
            )

    routes = tuple(r for r in topology.routes if r.service in services)
    dropped = len(topology.routes) - len(routes)
    if dropped:
        logger.info(f"[profiles] Dropped {dropped} route(s) targeting unselected services")

    subtopology = replace(topology, services=services, routes=routes)
    validate_topology(subtopology)

    logger.info(
        f"[profiles] Active profiles: {sorted(p.value for p in active)} -> "
        f"{len(services)}/{len(topology.services)} service(s)"
    )
    return subtopology


def scheduled(topology: Topology) -> Topology:
    """
    The part of a selected topology the scheduler runs.

    ssl-profile services are left out: they run only during certificate
    operations, through the certificate authority.

    Raises:
        ConfigError: if a scheduled service depends on an ssl-profile service
    """
    services = {
        name: spec
        for name, spec in topology.services.items()
        if spec.profile != Profile.SSL
    }
    for name, spec in services.items():
        ssl_deps = sorted(dep for dep in spec.depends_on if dep not in services)
        if ssl_deps:
            raise ConfigError(
                f"Service '{name}' depends on ssl-profile service(s) {ssl_deps}, "
                f"which only run during certificate operations"
            )
    return replace(topology, services=services)
