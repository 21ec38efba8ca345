from __future__ import annotations

from .topology import Route, ServiceSpec, Topology

PROXY_SERVICE = "traefik"
DATABASE_SERVICE = "postgres"
SSO_SERVICE = "authelia"
AUTHELIA_IMAGE = "authelia/authelia:4.38.0"

NETWORKS = ("devpod", "monitor")
VOLUMES = (
    "pg",
    "redis",
    "gitea",
    "drone",
    "registry",
    "verdaccio",
    "pypi",
    "code",
    "prometheus",
    "grafana",
    "authelia",
)


def _env(**values: str) -> tuple[tuple[str, str], ...]:
    return tuple(values.items())


def default_topology() -> Topology:
    """The developer platform: proxy, stores, forge, CI, registries, editor, monitoring, SSO."""
    services = (
        ServiceSpec(
            name=PROXY_SERVICE,
            image="traefik:v2.10",
            networks=("devpod", "monitor"),
            ports=("80:80", "443:443", "${SSH_PORT}:${SSH_PORT}"),
            volumes=(
                "/var/run/docker.sock:/var/run/docker.sock:ro",
                "${TRAEFIK_DIR}:/etc/traefik",
                "${TRAEFIK_DIR}/acme:/acme",
            ),
            route=Route(subdomain="traefik", target="api@internal"),
        ),
        ServiceSpec(
            name=DATABASE_SERVICE,
            image="postgres:16-alpine",
            environment=_env(POSTGRES_PASSWORD="${POSTGRES_PASSWORD}"),
            volumes=("pg:/var/lib/postgresql/data",),
            networks=("devpod",),
        ),
        ServiceSpec(
            name="redis",
            image="redis:7-alpine",
            command="--requirepass ${REDIS_PASSWORD}",
            volumes=("redis:/data",),
            networks=("devpod",),
        ),
        ServiceSpec(
            name="gitea",
            image="gitea/gitea:1.21-rootless",
            depends_on=(DATABASE_SERVICE, "redis"),
            environment=_env(
                USER_UID="1000",
                USER_GID="1000",
                GITEA__database__DB_TYPE="postgres",
                GITEA__database__HOST="postgres:5432",
                GITEA__database__USER="postgres",
                GITEA__database__PASSWD="${POSTGRES_PASSWORD}",
                GITEA__security__SECRET_KEY="${JWT_SECRET}",
                GITEA__server__DOMAIN="git.${DOMAIN}",
                GITEA__server__ROOT_URL="https://git.${DOMAIN}/",
                GITEA__server__SSH_DOMAIN="git.${DOMAIN}",
                GITEA__server__SSH_PORT="${SSH_PORT}",
                GITEA__server__SSH_LISTEN_PORT="2222",
                GITEA__security__DEFAULT_ADMIN_NAME="${ADMIN_USER}",
                GITEA__security__DEFAULT_ADMIN_PASSWORD="${ADMIN_PASSWORD}",
                GITEA__security__DEFAULT_ADMIN_EMAIL="${EMAIL}",
                GITEA__cache__ADAPTER="redis",
                GITEA__cache__HOST="redis://:${REDIS_PASSWORD}@redis:6379/0",
            ),
            volumes=("gitea:/var/lib/gitea",),
            networks=("devpod",),
            route=Route(subdomain="git", port=3000),
            labels=(
                ("traefik.tcp.routers.gitea-ssh.rule", "HostSNI(`*`)"),
                ("traefik.tcp.routers.gitea-ssh.entrypoints", "ssh"),
                ("traefik.tcp.routers.gitea-ssh.service", "gitea-ssh"),
                ("traefik.tcp.services.gitea-ssh.loadbalancer.server.port", "2222"),
            ),
        ),
        ServiceSpec(
            name="drone",
            image="drone/drone:2.24",
            depends_on=("gitea",),
            environment=_env(
                DRONE_GITEA_SERVER="https://git.${DOMAIN}",
                DRONE_SERVER_HOST="ci.${DOMAIN}",
                DRONE_SERVER_PROTO="https",
                DRONE_RPC_SECRET="${DRONE_RPC}",
            ),
            volumes=("drone:/data",),
            networks=("devpod",),
            route=Route(subdomain="ci", port=80),
        ),
        ServiceSpec(
            name="drone-runner",
            image="drone/drone-runner-docker:1.8.3",
            depends_on=("drone",),
            environment=_env(
                DRONE_RPC_PROTO="http",
                DRONE_RPC_HOST="drone",
                DRONE_RPC_SECRET="${DRONE_RPC}",
            ),
            volumes=("/var/run/docker.sock:/var/run/docker.sock",),
            networks=("devpod",),
        ),
        ServiceSpec(
            name="registry",
            image="registry:2",
            environment=_env(REGISTRY_HTTP_ADDR=":5000"),
            volumes=("registry:/var/lib/registry",),
            networks=("devpod",),
            route=Route(subdomain="registry", port=5000),
        ),
        ServiceSpec(
            name="verdaccio",
            image="verdaccio/verdaccio:5",
            volumes=("verdaccio:/verdaccio/storage",),
            networks=("devpod",),
            route=Route(subdomain="npm", port=4873),
        ),
        ServiceSpec(
            name="pypi",
            image="pypiserver/pypiserver:v1.5.2",
            command="run -P . -a . /data/packages",
            volumes=("pypi:/data/packages",),
            networks=("devpod",),
            route=Route(subdomain="pypi", port=8080),
        ),
        ServiceSpec(
            name="code",
            image="lscr.io/linuxserver/code-server:4.22.0",
            environment=_env(
                PUID="1000",
                PGID="1000",
                PASSWORD="${ADMIN_PASSWORD}",
                TZ="UTC",
            ),
            volumes=("code:/config", "${WORKSPACE_DIR}:/home/dev"),
            networks=("devpod",),
            route=Route(subdomain="code", port=8443),
        ),
        ServiceSpec(
            name="prometheus",
            image="prom/prometheus:v2.48.1",
            command="--config.file=/etc/prometheus/prometheus.yml",
            volumes=("prometheus:/prometheus",),
            networks=("devpod", "monitor"),
            route=Route(subdomain="prom", port=9090),
        ),
        ServiceSpec(
            name="grafana",
            image="grafana/grafana:10.2.2",
            depends_on=("prometheus",),
            volumes=("grafana:/var/lib/grafana",),
            networks=("devpod", "monitor"),
            route=Route(subdomain="grafana", port=3000),
        ),
        ServiceSpec(
            name=SSO_SERVICE,
            image=AUTHELIA_IMAGE,
            volumes=("${CFG_DIR}/authelia:/config", "authelia:/var/lib/authelia"),
            networks=("devpod",),
            route=Route(subdomain="auth", sso=False, port=9091),
        ),
    )
    return Topology(
        services=services,
        networks=NETWORKS,
        volumes=VOLUMES,
        sso_service=SSO_SERVICE,
    ).validate()
