from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

import yaml

from .errors import CyclicDependency, DuplicateRoute, InvalidTopology, UnknownService

_NAME_RE = re.compile(r"^[a-z0-9][a-z0-9_-]*$")
_SUBDOMAIN_RE = re.compile(r"^[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?$")
_VAR_RE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(:?-[^}]*)?\}")

SSO_MIDDLEWARE = "authelia"


@dataclass(frozen=True)
class Route:
    subdomain: str
    sso: bool = True
    port: int | None = None
    target: str | None = None


@dataclass(frozen=True)
class ServiceSpec:
    name: str
    image: str
    depends_on: tuple[str, ...] = ()
    environment: tuple[tuple[str, str], ...] = ()
    volumes: tuple[str, ...] = ()
    networks: tuple[str, ...] = ()
    route: Route | None = None
    ports: tuple[str, ...] = ()
    command: str | None = None
    labels: tuple[tuple[str, str], ...] = ()
    restart: str = "unless-stopped"

    def referenced_variables(self) -> set[str]:
        texts = [self.image, self.command or ""]
        texts.extend(value for _, value in self.environment)
        texts.extend(self.volumes)
        texts.extend(self.ports)
        texts.extend(value for _, value in self.labels)
        found: set[str] = set()
        for text in texts:
            # ${NAME:-default} does not require NAME to be set
            found.update(name for name, default in _VAR_RE.findall(text) if not default)
        return found

    def named_volumes(self) -> list[str]:
        names = []
        for mount in self.volumes:
            source = mount.split(":", 1)[0]
            if source and not source.startswith(("/", ".", "$", "~")):
                names.append(source)
        return names


@dataclass(frozen=True)
class Topology:
    services: tuple[ServiceSpec, ...]
    networks: tuple[str, ...] = ()
    volumes: tuple[str, ...] = ()
    sso_service: str | None = None
    _index: dict[str, ServiceSpec] = field(default_factory=dict, init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        index: dict[str, ServiceSpec] = {}
        for svc in self.services:
            if svc.name in index:
                raise InvalidTopology(f"Duplicate service name: {svc.name}")
            index[svc.name] = svc
        object.__setattr__(self, "_index", index)

    def __contains__(self, name: object) -> bool:
        return name in self._index

    def service(self, name: str) -> ServiceSpec:
        try:
            return self._index[name]
        except KeyError:
            raise UnknownService(name, "lookup") from None

    @property
    def names(self) -> list[str]:
        return [svc.name for svc in self.services]

    def validate(self) -> "Topology":
        """Check structural invariants; returns self so calls can be chained."""
        if not self.services:
            raise InvalidTopology("Topology declares no services.")
        declared_networks = set(self.networks)
        declared_volumes = set(self.volumes)
        for svc in self.services:
            if not _NAME_RE.match(svc.name):
                raise InvalidTopology(f"Invalid service name: {svc.name!r}")
            if not svc.image:
                raise InvalidTopology(f"Service {svc.name} has no image.")
            for dep in svc.depends_on:
                if dep not in self._index:
                    raise UnknownService(dep, f"service {svc.name}")
                if dep == svc.name:
                    raise CyclicDependency([svc.name, svc.name])
            for net in svc.networks:
                if net not in declared_networks:
                    raise InvalidTopology(f"Service {svc.name} joins undeclared network '{net}'")
            for vol in svc.named_volumes():
                if vol not in declared_volumes:
                    raise InvalidTopology(f"Service {svc.name} mounts undeclared volume '{vol}'")
        self._check_routes()
        self.startup_order()
        return self

    def _check_routes(self) -> None:
        claimed: dict[str, str] = {}
        for svc in self.services:
            route = svc.route
            if route is None:
                continue
            if not _SUBDOMAIN_RE.match(route.subdomain):
                raise InvalidTopology(f"Service {svc.name} has invalid route subdomain '{route.subdomain}'")
            if route.subdomain in claimed:
                raise DuplicateRoute(route.subdomain, [claimed[route.subdomain], svc.name])
            claimed[route.subdomain] = svc.name
            if route.sso:
                if not self.sso_service:
                    raise InvalidTopology(f"Route {route.subdomain} requires SSO but no SSO service is declared.")
                if self.sso_service not in self._index:
                    raise UnknownService(self.sso_service, f"route {route.subdomain}")
        if self.sso_service and self.sso_service in self._index and self.sso_route() is None:
            raise InvalidTopology(f"SSO service {self.sso_service} needs a public route for its login portal.")

    def startup_order(self) -> list[str]:
        """Topological order; independent services keep declaration order."""
        order: list[str] = []
        state: dict[str, int] = {}
        stack: list[str] = []

        def visit(name: str) -> None:
            mark = state.get(name, 0)
            if mark == 2:
                return
            if mark == 1:
                start = stack.index(name)
                raise CyclicDependency([*stack[start:], name])
            state[name] = 1
            stack.append(name)
            for dep in self._index[name].depends_on:
                if dep not in self._index:
                    raise UnknownService(dep, f"service {name}")
                visit(dep)
            stack.pop()
            state[name] = 2
            order.append(name)

        for svc in self.services:
            visit(svc.name)
        return order

    def routes(self) -> list[tuple[str, Route]]:
        return [(svc.name, svc.route) for svc in self.services if svc.route is not None]

    def sso_route(self) -> Route | None:
        if not self.sso_service or self.sso_service not in self._index:
            return None
        return self._index[self.sso_service].route

    def hosts(self, domain: str) -> dict[str, str]:
        return {f"{route.subdomain}.{domain}": name for name, route in self.routes()}

    def referenced_variables(self) -> set[str]:
        found: set[str] = set()
        for svc in self.services:
            found |= svc.referenced_variables()
        return found

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Topology":
        if not isinstance(data, Mapping):
            raise InvalidTopology("Topology document must be a mapping.")
        services_raw = data.get("services") or {}
        if not isinstance(services_raw, Mapping):
            raise InvalidTopology("'services' must be a mapping of name to definition.")
        services = [_service_from_dict(str(name), raw or {}) for name, raw in services_raw.items()]
        topology = cls(
            services=tuple(services),
            networks=tuple(str(n) for n in _as_list(data.get("networks"))),
            volumes=tuple(str(v) for v in _as_list(data.get("volumes"))),
            sso_service=str(data["sso_service"]) if data.get("sso_service") else None,
        )
        return topology.validate()


def _as_list(value: Any) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, Mapping):
        return list(value.keys())
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


def _pairs(value: Any, *, what: str, service: str) -> tuple[tuple[str, str], ...]:
    if value is None:
        return ()
    if isinstance(value, Mapping):
        return tuple((str(k), str(v)) for k, v in value.items())
    if isinstance(value, (list, tuple)):
        pairs = []
        for item in value:
            text = str(item)
            if "=" not in text:
                raise InvalidTopology(f"Service {service}: {what} entry '{text}' must be KEY=value")
            key, val = text.split("=", 1)
            pairs.append((key, val))
        return tuple(pairs)
    raise InvalidTopology(f"Service {service}: {what} must be a mapping or list")


def _service_from_dict(name: str, raw: Mapping[str, Any]) -> ServiceSpec:
    if not isinstance(raw, Mapping):
        raise InvalidTopology(f"Service {name} must be a mapping.")
    route = None
    route_raw = raw.get("route")
    if route_raw:
        if isinstance(route_raw, str):
            route_raw = {"subdomain": route_raw}
        if not isinstance(route_raw, Mapping) or not route_raw.get("subdomain"):
            raise InvalidTopology(f"Service {name}: route needs a subdomain")
        port = route_raw.get("port")
        route = Route(
            subdomain=str(route_raw["subdomain"]),
            sso=bool(route_raw.get("sso", True)),
            port=int(port) if port is not None else None,
            target=str(route_raw["target"]) if route_raw.get("target") else None,
        )
    return ServiceSpec(
        name=name,
        image=str(raw.get("image") or ""),
        depends_on=tuple(str(d) for d in _as_list(raw.get("depends_on"))),
        environment=_pairs(raw.get("environment"), what="environment", service=name),
        volumes=tuple(str(v) for v in _as_list(raw.get("volumes"))),
        networks=tuple(str(n) for n in _as_list(raw.get("networks"))),
        route=route,
        ports=tuple(str(p) for p in _as_list(raw.get("ports"))),
        command=str(raw["command"]) if raw.get("command") else None,
        labels=_pairs(raw.get("labels"), what="labels", service=name),
        restart=str(raw.get("restart") or "unless-stopped"),
    )


def load_topology(path: str | Path) -> Topology:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as exc:
        raise InvalidTopology(f"Cannot load topology {path}: {exc}") from exc
    return Topology.from_dict(data or {})

