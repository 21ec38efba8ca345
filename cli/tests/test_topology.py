import pytest

from devpod_core.errors import CyclicDependency, DuplicateRoute, InvalidTopology, UnknownService
from devpod_core.stack import SSO_SERVICE, default_topology
from devpod_core.topology import Route, ServiceSpec, Topology, load_topology


def _svc(name, *, deps=(), route=None, networks=("net",), volumes=()):
    return ServiceSpec(name=name, image=f"{name}:1", depends_on=deps, route=route, networks=networks, volumes=volumes)


def test_cycle_is_reported_with_path() -> None:
    topo = Topology(services=(_svc("a", deps=("b",)), _svc("b", deps=("a",))), networks=("net",))
    with pytest.raises(CyclicDependency) as exc:
        topo.validate()
    assert "a -> b -> a" in str(exc.value)


def test_self_dependency_is_a_cycle() -> None:
    topo = Topology(services=(_svc("a", deps=("a",)),), networks=("net",))
    with pytest.raises(CyclicDependency):
        topo.validate()


def test_duplicate_subdomain_names_both_services() -> None:
    topo = Topology(
        services=(
            _svc("one", route=Route("app", sso=False, port=80)),
            _svc("two", route=Route("app", sso=False, port=80)),
        ),
        networks=("net",),
    )
    with pytest.raises(DuplicateRoute) as exc:
        topo.validate()
    message = str(exc.value)
    assert "app" in message and "one" in message and "two" in message


def test_unknown_dependency() -> None:
    topo = Topology(services=(_svc("web", deps=("db",)),), networks=("net",))
    with pytest.raises(UnknownService):
        topo.validate()


def test_sso_route_requires_sso_service() -> None:
    topo = Topology(
        services=(_svc("web", route=Route("web", port=80)),),
        networks=("net",),
        sso_service="authelia",
    )
    with pytest.raises(UnknownService):
        topo.validate()


def test_undeclared_network_and_volume() -> None:
    with pytest.raises(InvalidTopology):
        Topology(services=(_svc("web", networks=("other",)),), networks=("net",)).validate()
    with pytest.raises(InvalidTopology):
        Topology(services=(_svc("web", volumes=("data:/data",)),), networks=("net",)).validate()


def test_duplicate_service_name() -> None:
    with pytest.raises(InvalidTopology):
        Topology(services=(_svc("web"), _svc("web")), networks=("net",))


def test_startup_order_keeps_declaration_order_for_independent_services() -> None:
    topo = Topology(
        services=(_svc("app", deps=("db", "cache")), _svc("db"), _svc("cache"), _svc("worker", deps=("app",))),
        networks=("net",),
    ).validate()
    assert topo.startup_order() == ["db", "cache", "app", "worker"]


def test_default_topology_routes() -> None:
    topo = default_topology()
    hosts = topo.hosts("example.com")
    assert hosts["git.example.com"] == "gitea"
    assert hosts["code.example.com"] == "code"
    assert hosts["auth.example.com"] == SSO_SERVICE
    assert hosts["traefik.example.com"] == "traefik"
    assert topo.service("gitea").route.sso
    assert topo.service("code").route.sso
    assert not topo.service(SSO_SERVICE).route.sso
    order = topo.startup_order()
    assert order.index("postgres") < order.index("gitea") < order.index("drone") < order.index("drone-runner")
    assert order.index("prometheus") < order.index("grafana")


def test_variables_with_defaults_are_optional() -> None:
    svc = ServiceSpec(
        name="web",
        image="web:${TAG:-latest}",
        environment=(("URL", "https://${DOMAIN}"),),
    )
    assert svc.referenced_variables() == {"DOMAIN"}


def test_load_topology_from_yaml(tmp_path) -> None:
    path = tmp_path / "topology.yml"
    path.write_text(
        """
networks: [edge]
volumes: [data]
sso_service: sso
services:
  db:
    image: postgres:16-alpine
    networks: [edge]
    volumes: ["data:/var/lib/postgresql/data"]
    environment:
      POSTGRES_PASSWORD: ${POSTGRES_PASSWORD}
  app:
    image: ghcr.io/acme/app:1.0
    depends_on: [db]
    networks: [edge]
    route: {subdomain: app, port: 8000}
  sso:
    image: authelia/authelia:4.38.0
    networks: [edge]
    route: {subdomain: login, sso: false, port: 9091}
""",
        encoding="utf-8",
    )
    topo = load_topology(path)
    assert topo.names == ["db", "app", "sso"]
    assert topo.service("app").route == Route("app", sso=True, port=8000)
    assert topo.sso_route().subdomain == "login"
    assert topo.referenced_variables() == {"POSTGRES_PASSWORD"}


def test_load_topology_rejects_bad_environment(tmp_path) -> None:
    path = tmp_path / "topology.yml"
    path.write_text("services:\n  app:\n    image: app:1\n    environment: [NOVALUE]\n", encoding="utf-8")
    with pytest.raises(InvalidTopology):
        load_topology(path)


def test_load_topology_missing_or_malformed(tmp_path) -> None:
    with pytest.raises(InvalidTopology, match="Cannot load topology"):
        load_topology(tmp_path / "missing.yml")

    path = tmp_path / "topology.yml"
    path.write_text("services: [unclosed\n", encoding="utf-8")
    with pytest.raises(InvalidTopology, match="Cannot load topology"):
        load_topology(path)
