# orchestration_engine/topology/loader.py
"""
Topology loading and validation.

A malformed topology fails fast with ConfigError before any service is
started, so no partial orchestration ever begins.
"""

import logging
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

import yaml
from pydantic import ValidationError

from orchestration_engine.core.errors import ConfigError, DependencyCycleError
from orchestration_engine.core.models import (
    DomainSpec,
    HeaderRewrite,
    HealthCheckDefinition,
    HealthCheckType,
    IngressSpec,
    Profile,
    RestartPolicy,
    RouteRule,
    ServiceSpec,
    Topology,
)
from orchestration_engine.topology.schemas import (
    HealthCheckSchema,
    RouteSchema,
    ServiceSchema,
    TopologySchema,
)

logger = logging.getLogger(__name__)


# ============================================
# YAML parsing
# ============================================

class _UniqueKeyLoader(yaml.SafeLoader):
    """SafeLoader that rejects duplicate mapping keys instead of keeping the last one."""

    def construct_mapping(self, node, deep=False):
        seen = set()
        for key_node, _ in node.value:
            key = self.construct_object(key_node, deep=deep)
            if key in seen:
                raise ConfigError(
                    f"Duplicate key '{key}' at line {key_node.start_mark.line + 1}"
                )
            seen.add(key)
        return super().construct_mapping(node, deep=deep)


def _read_source(source: Union[str, Path, Mapping]) -> Dict[str, Any]:
    if isinstance(source, Mapping):
        return dict(source)

    text = None
    if isinstance(source, Path):
        if not source.exists():
            raise ConfigError(f"Topology file not found: {source}")
        text = source.read_text(encoding="utf-8")
    elif isinstance(source, str):
        candidate = Path(source) if "\n" not in source and len(source) < 4096 else None
        if candidate is not None and candidate.is_file():
            text = candidate.read_text(encoding="utf-8")
        elif candidate is not None and candidate.suffix in (".yml", ".yaml", ".json"):
            raise ConfigError(f"Topology file not found: {source}")
        else:
            text = source
    else:
        raise ConfigError(f"Unsupported topology source type: {type(source).__name__}")

    try:
        data = yaml.load(text, Loader=_UniqueKeyLoader)
    except yaml.YAMLError as e:
        raise ConfigError(f"Topology is not valid YAML/JSON: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError("Topology document must be a mapping")
    return data


def _format_validation_error(error: ValidationError) -> str:
    parts = []
    for item in error.errors():
        location = ".".join(str(p) for p in item["loc"])
        parts.append(f"{location}: {item['msg']}")
    return "; ".join(parts)


# ============================================
# Schema -> model conversion
# ============================================

def _health_check(schema: Optional[HealthCheckSchema]) -> Optional[HealthCheckDefinition]:
    if schema is None:
        return None
    return HealthCheckDefinition(
        type=HealthCheckType(schema.type),
        path=schema.path,
        port=schema.port,
        command=tuple(schema.command),
        interval_seconds=schema.interval_seconds,
        timeout_seconds=schema.timeout_seconds,
        success_threshold=schema.success_threshold,
        failure_threshold=schema.failure_threshold,
        initial_delay_seconds=schema.initial_delay_seconds,
    )


def _service(name: str, schema: ServiceSchema) -> ServiceSpec:
    profile = Profile(schema.profile)

    if schema.restart_policy is not None:
        restart_policy = RestartPolicy(schema.restart_policy)
    elif profile == Profile.DEFAULT:
        restart_policy = RestartPolicy.ON_FAILURE
    else:
        # One-shot build and certificate services are not restarted by default
        restart_policy = RestartPolicy.NEVER

    return ServiceSpec(
        name=name,
        image=schema.image,
        build=schema.build,
        command=tuple(schema.command),
        ports=tuple(schema.ports),
        environment=dict(schema.environment),
        volumes=tuple(schema.volumes),
        depends_on=frozenset(schema.depends_on),
        health_check=_health_check(schema.health_check),
        profile=profile,
        restart_policy=restart_policy,
        hostname=schema.hostname,
    )


def _route(schema: RouteSchema) -> RouteRule:
    return RouteRule(
        prefix=schema.prefix,
        service=schema.service,
        port=schema.port,
        strip_prefix=schema.strip_prefix,
        preserve_host=schema.preserve_host,
        headers=HeaderRewrite(
            set=dict(schema.headers.set),
            remove=tuple(h.lower() for h in schema.headers.remove),
        ),
        timeout_seconds=schema.timeout_seconds,
        retries=schema.retries,
        enabled=schema.enabled,
    )


def _services(schema: TopologySchema) -> Dict[str, ServiceSpec]:
    services: Dict[str, ServiceSpec] = {}

    if isinstance(schema.services, dict):
        items = []
        for key, svc in schema.services.items():
            if svc.name and svc.name != key:
                raise ConfigError(f"Service '{key}' declares a different name '{svc.name}'")
            items.append((key, svc))
    else:
        items = []
        for index, svc in enumerate(schema.services):
            if not svc.name:
                raise ConfigError(f"services[{index}] is missing 'name'")
            items.append((svc.name, svc))

    for name, svc in items:
        if not name or not name.strip():
            raise ConfigError("Service names must not be empty")
        if name in services:
            raise ConfigError(f"Duplicate service name '{name}'")
        services[name] = _service(name, svc)

    return services


# ============================================
# Graph helpers
# ============================================

def find_cycle(graph: Dict[str, Iterable[str]]) -> Optional[List[str]]:
    """Return one dependency cycle as a closed path (a -> b -> a), or None."""
    WHITE, GREY, BLACK = 0, 1, 2
    color = {node: WHITE for node in graph}
    stack: List[str] = []

    def visit(node: str) -> Optional[List[str]]:
        color[node] = GREY
        stack.append(node)
        for dep in sorted(graph.get(node, ())):
            if dep not in color:
                continue
            if color[dep] == GREY:
                return stack[stack.index(dep):] + [dep]
            if color[dep] == WHITE:
                cycle = visit(dep)
                if cycle:
                    return cycle
        stack.pop()
        color[node] = BLACK
        return None

    for node in sorted(graph):
        if color[node] == WHITE:
            cycle = visit(node)
            if cycle:
                return cycle
    return None


def topological_levels(services: Dict[str, ServiceSpec]) -> List[List[str]]:
    """
    Group services into dependency levels.

    Level 0 has no dependencies; every service in level k depends only on
    services in levels < k. Dependencies outside `services` are ignored.

    Raises:
        DependencyCycleError: if the graph is cyclic
    """
    graph = {
        name: {dep for dep in spec.depends_on if dep in services}
        for name, spec in services.items()
    }

    cycle = find_cycle(graph)
    if cycle:
        raise DependencyCycleError(cycle)

    levels: List[List[str]] = []
    placed: set = set()
    remaining = dict(graph)

    while remaining:
        level = sorted(name for name, deps in remaining.items() if deps <= placed)
        if not level:
            # Unreachable once find_cycle passed
            raise DependencyCycleError(sorted(remaining))
        levels.append(level)
        placed.update(level)
        for name in level:
            del remaining[name]

    return levels


def dependents_closure(services: Dict[str, ServiceSpec], name: str) -> set:
    """All services that transitively depend on `name`."""
    result = set()
    frontier = [name]
    while frontier:
        current = frontier.pop()
        for other, spec in services.items():
            if current in spec.depends_on and other not in result:
                result.add(other)
                frontier.append(other)
    return result


# ============================================
# Validation
# ============================================

def validate_topology(topology: Topology) -> None:
    """Semantic validation shared by load() and the profile gate."""
    services = topology.services

    for name, spec in services.items():
        if name in spec.depends_on:
            raise DependencyCycleError([name, name])
        missing = sorted(dep for dep in spec.depends_on if dep not in services)
        if missing:
            raise ConfigError(
                f"Service '{name}' depends on undeclared service(s): {', '.join(missing)}"
            )
        hc = spec.health_check
        if hc and hc.type in (HealthCheckType.HTTP, HealthCheckType.TCP):
            if hc.port is None and spec.default_port is None:
                raise ConfigError(
                    f"Service '{name}' has a {hc.type.value} health check but no port"
                )

    cycle = find_cycle({name: spec.depends_on for name, spec in services.items()})
    if cycle:
        raise DependencyCycleError(cycle)

    seen_prefixes = {}
    for route in topology.routes:
        if route.service not in services:
            raise ConfigError(
                f"Route '{route.prefix}' targets undeclared service '{route.service}'"
            )
        target = services[route.service]
        if target.profile != Profile.DEFAULT:
            raise ConfigError(
                f"Route '{route.prefix}' targets '{route.service}' which is a "
                f"{target.profile.value}-profile service"
            )
        port = route.port or target.default_port
        if port is None:
            raise ConfigError(
                f"Route '{route.prefix}' targets '{route.service}' which exposes no port"
            )
        if route.port is not None and target.ports and route.port not in target.ports:
            raise ConfigError(
                f"Route '{route.prefix}' uses port {route.port} not exposed by '{route.service}'"
            )
        if not route.enabled:
            continue
        if route.prefix in seen_prefixes:
            raise ConfigError(
                f"Duplicate route prefix '{route.prefix}' "
                f"({seen_prefixes[route.prefix]} and {route.service})"
            )
        seen_prefixes[route.prefix] = route.service

    domain_names = [d.name for d in topology.domains]
    duplicates = sorted({n for n in domain_names if domain_names.count(n) > 1})
    if duplicates:
        raise ConfigError(f"Duplicate domain(s): {', '.join(duplicates)}")


# ============================================
# Public API
# ============================================

def load(source: Union[str, Path, Mapping]) -> Topology:
    """
    Load and validate a topology.

    Args:
        source: path to a YAML/JSON file, YAML text, or a parsed mapping

    Returns:
        Validated Topology

    Raises:
        ConfigError: malformed topology
        DependencyCycleError: cyclic depends_on graph
    """
    data = _read_source(source)

    try:
        schema = TopologySchema.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid topology: {_format_validation_error(e)}") from e

    services = _services(schema)

    topology = Topology(
        services=services,
        routes=tuple(_route(r) for r in schema.routes),
        domains=tuple(
            DomainSpec(name=d.name, email=d.email, redirect_http=d.redirect_http)
            for d in schema.domains
        ),
        ingress=IngressSpec(
            host=schema.ingress.host,
            http_port=schema.ingress.http_port,
            https_port=schema.ingress.https_port,
            challenge_prefix=schema.ingress.challenge_prefix,
        ),
    )

    validate_topology(topology)

    logger.info(
        f"[topology] Loaded {len(topology.services)} service(s), "
        f"{len(topology.routes)} route(s), {len(topology.domains)} domain(s)"
    )
    return topology


def describe(topology: Topology) -> Dict[str, Any]:
    """Plain-data summary of a topology (status surface)."""
    return (
        {
            "services": {
                name: {
                    "profile": spec.profile.value,
                    "depends_on": sorted(spec.depends_on),
                    "restart_policy": spec.restart_policy.value,
                }
                for name, spec in topology.services.items()
            },
            "routes": [
                {"prefix": r.prefix, "service": r.service, "enabled": r.enabled}
                for r in topology.routes
            ],
            "domains": [d.name for d in topology.domains],
        }
    )
