from __future__ import annotations

import hashlib
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping

import yaml

from .credentials import SECRET_NAMES, SecretBundle
from .errors import MissingParameter
from .fsutil import atomic_write
from .params import ENV_KEYS, StackParameters
from .topology import SSO_MIDDLEWARE, Topology

PROXY_STATIC = "proxy-static-config"
PROXY_MIDDLEWARE = "proxy-middleware-config"
IDENTITY_CONFIG = "identity-provider-config"
IDENTITY_USERS = "identity-users-file"
ENVIRONMENT_FILE = "environment-file"
TOPOLOGY_FILE = "topology-file"
MAINTENANCE_SCRIPT = "maintenance-job-script"

DEFAULT_PROJECT_NAME = "devpod"
DEFAULT_RETENTION_DAYS = 7
CERT_RESOLVER = "letsencrypt"

MODE_SECRET = 0o600
MODE_PUBLIC = 0o644
MODE_SCRIPT = 0o700


@dataclass(frozen=True)
class RenderedArtifact:
    template_id: str
    path: Path
    content: str
    mode: int = MODE_PUBLIC


@dataclass(frozen=True)
class TemplateSpec:
    template_id: str
    required: tuple[str, ...]
    build: Callable[[Mapping[str, Any]], str]
    extra_required: Callable[[Mapping[str, Any]], Iterable[str]] | None = None

    def required_keys(self, params: Mapping[str, Any]) -> list[str]:
        keys = list(self.required)
        if self.extra_required is not None:
            keys.extend(sorted(set(self.extra_required(params)) - set(keys)))
        return keys


def _dump_yaml(data: Any) -> str:
    dumped = yaml.safe_dump(data, sort_keys=False, default_flow_style=False)
    return dumped if dumped.endswith("\n") else dumped + "\n"


def _render_proxy_static(p: Mapping[str, Any]) -> str:
    return _dump_yaml(
        {
            "entryPoints": {
                "web": {
                    "address": ":80",
                    "http": {"redirections": {"entryPoint": {"to": "websecure", "scheme": "https"}}},
                },
                "websecure": {"address": ":443"},
                "ssh": {"address": f":{p['SSH_PORT']}"},
            },
            "certificatesResolvers": {
                CERT_RESOLVER: {
                    "acme": {
                        "email": p["EMAIL"],
                        "storage": "/acme/acme.json",
                        "httpChallenge": {"entryPoint": "web"},
                    }
                }
            },
            "providers": {
                "docker": {"network": p["PROXY_NETWORK"], "exposedByDefault": False},
                "file": {"directory": "/etc/traefik/dynamic", "watch": True},
            },
            "api": {"dashboard": True},
        }
    )


def _render_proxy_middleware(p: Mapping[str, Any]) -> str:
    address = (
        f"http://{p['SSO_SERVICE']}:{p['SSO_PORT']}/api/verify"
        f"?rd=https://{p['SSO_SUBDOMAIN']}.{p['DOMAIN']}"
    )
    return _dump_yaml(
        {
            "http": {
                "middlewares": {
                    SSO_MIDDLEWARE: {
                        "forwardAuth": {
                            "address": address,
                            "trustForwardHeader": True,
                            "authResponseHeaders": [
                                "Remote-User",
                                "Remote-Email",
                                "Remote-Name",
                                "Remote-Groups",
                            ],
                        }
                    }
                }
            }
        }
    )


def _storage_key(p: Mapping[str, Any]) -> str:
    return hashlib.sha256(f"storage:{p['JWT_SECRET']}".encode("utf-8")).hexdigest()


def _render_identity_config(p: Mapping[str, Any]) -> str:
    domain = p["DOMAIN"]
    return _dump_yaml(
        {
            "theme": "dark",
            "server": {"address": f"tcp://0.0.0.0:{p['SSO_PORT']}"},
            "log": {"level": "info"},
            "identity_validation": {"reset_password": {"jwt_secret": p["AUTHELIA_JWT"]}},
            "authentication_backend": {"file": {"path": "/config/users.yml"}},
            "access_control": {
                "default_policy": "deny",
                "rules": [{"domain": [f"*.{domain}", domain], "policy": "one_factor"}],
            },
            "session": {
                "secret": p["JWT_SECRET"],
                "cookies": [
                    {
                        "domain": domain,
                        "authelia_url": f"https://{p['SSO_SUBDOMAIN']}.{domain}",
                    }
                ],
            },
            "storage": {
                "encryption_key": _storage_key(p),
                "local": {"path": "/config/db.sqlite3"},
            },
            "notifier": {"filesystem": {"filename": "/config/notification.txt"}},
        }
    )


def _render_identity_users(p: Mapping[str, Any]) -> str:
    user = p["ADMIN_USER"]
    return _dump_yaml(
        {
            "users": {
                user: {
                    "displayname": user,
                    "password": p["ADMIN_PASSWORD_HASH"],
                    "email": p["EMAIL"],
                    "groups": ["admins"],
                }
            }
        }
    )


def _render_environment(p: Mapping[str, Any]) -> str:
    lines = ["# Managed by devpod. Secrets below are reused on upgrade; do not edit."]
    lines.extend(f"{key}={p[key]}" for key in ENV_KEYS)
    lines.append("")
    lines.extend(f"{key}={p[key]}" for key in SECRET_NAMES)
    return "\n".join(lines) + "\n"


def _route_labels(name: str, svc_networks: tuple[str, ...], route, sso_enabled: bool) -> dict[str, str]:
    prefix = f"traefik.http.routers.{name}"
    labels = {
        "traefik.enable": "true",
        f"{prefix}.rule": f"Host(`{route.subdomain}.${{DOMAIN}}`)",
        f"{prefix}.entrypoints": "websecure",
        f"{prefix}.tls.certresolver": CERT_RESOLVER,
    }
    if svc_networks:
        labels["traefik.docker.network"] = svc_networks[0]
    if route.sso and sso_enabled:
        labels[f"{prefix}.middlewares"] = f"{SSO_MIDDLEWARE}@file"
    if route.target:
        labels[f"{prefix}.service"] = route.target
    elif route.port:
        labels[f"traefik.http.services.{name}.loadbalancer.server.port"] = str(route.port)
    return labels


def _compose_document(topology: Topology, project_name: str) -> dict[str, Any]:
    services: dict[str, Any] = {}
    for svc in topology.services:
        entry: dict[str, Any] = {"image": svc.image, "restart": svc.restart}
        if svc.command:
            entry["command"] = svc.command
        if svc.depends_on:
            entry["depends_on"] = list(svc.depends_on)
        if svc.environment:
            entry["environment"] = {key: value for key, value in svc.environment}
        if svc.ports:
            entry["ports"] = list(svc.ports)
        if svc.volumes:
            entry["volumes"] = list(svc.volumes)
        if svc.networks:
            entry["networks"] = list(svc.networks)
        labels: dict[str, str] = {}
        if svc.route is not None:
            labels.update(_route_labels(svc.name, svc.networks, svc.route, bool(topology.sso_service)))
        if svc.labels:
            if any(key.startswith("traefik.") for key, _ in svc.labels):
                labels.setdefault("traefik.enable", "true")
            labels.update({key: value for key, value in svc.labels})
        if labels:
            entry["labels"] = labels
        services[svc.name] = entry

    document: dict[str, Any] = {"name": project_name, "services": services}
    if topology.networks:
        # Explicit names keep the proxy's docker provider network stable across project names.
        document["networks"] = {net: {"name": net} for net in topology.networks}
    if topology.volumes:
        document["volumes"] = {vol: {} for vol in topology.volumes}
    return document


def _render_topology(p: Mapping[str, Any]) -> str:
    return _dump_yaml(_compose_document(p["TOPOLOGY"], p["PROJECT_NAME"]))


def _topology_variables(p: Mapping[str, Any]) -> Iterable[str]:
    topology = p.get("TOPOLOGY")
    if not isinstance(topology, Topology):
        return ()
    return topology.referenced_variables()


def _render_maintenance_script(p: Mapping[str, Any]) -> str:
    q = shlex.quote
    compose = (
        f"docker compose -p {q(p['PROJECT_NAME'])} --env-file {q(p['ENV_FILE'])} "
        f"-f {q(p['COMPOSE_FILE'])}"
    )
    backup_dir = q(p["BACKUP_DIR"])
    lines = [
        "#!/usr/bin/env bash",
        "# Managed by devpod: nightly backup. Each step runs even if an earlier one failed.",
        "set -uo pipefail",
        "",
        "log() { printf '[%s] %s\\n' \"$(date '+%F %T')\" \"$*\"; }",
        "",
        f"DEST={backup_dir}/\"$(date +%F)\"",
        "failed=()",
        "",
        "mkdir -p \"$DEST\" || { log \"cannot create $DEST\"; exit 1; }",
        "",
    ]
    database = p.get("DATABASE_SERVICE")
    if database:
        lines.extend(
            [
                f"if {compose} exec -T {q(database)} pg_dumpall -U postgres > \"$DEST/postgres.sql\"; then",
                "  log \"dump: ok\"",
                "else",
                "  log \"dump: failed\"",
                "  failed+=(dump)",
                "fi",
                "",
            ]
        )
    lines.extend(
        [
            f"if tar -czf \"$DEST/data.tar.gz\" -C {q(p['DATA_DIR'])} .; then",
            "  log \"archive: ok\"",
            "else",
            "  log \"archive: failed\"",
            "  failed+=(archive)",
            "fi",
            "",
            f"if find {backup_dir} -mindepth 1 -maxdepth 1 -type d -mtime +{int(p['RETENTION_DAYS'])} -exec rm -rf {{}} +; then",
            "  log \"prune: ok\"",
            "else",
            "  log \"prune: failed\"",
            "  failed+=(prune)",
            "fi",
            "",
            "if (( ${#failed[@]} )); then",
            "  log \"backup finished with failures: ${failed[*]}\"",
            "  exit 1",
            "fi",
            "log \"backup finished\"",
        ]
    )
    return "\n".join(lines) + "\n"


TEMPLATES: dict[str, TemplateSpec] = {
    spec.template_id: spec
    for spec in (
        TemplateSpec(PROXY_STATIC, ("EMAIL", "SSH_PORT", "PROXY_NETWORK"), _render_proxy_static),
        TemplateSpec(
            PROXY_MIDDLEWARE,
            ("DOMAIN", "SSO_SERVICE", "SSO_PORT", "SSO_SUBDOMAIN"),
            _render_proxy_middleware,
        ),
        TemplateSpec(
            IDENTITY_CONFIG,
            ("DOMAIN", "AUTHELIA_JWT", "JWT_SECRET", "SSO_PORT", "SSO_SUBDOMAIN"),
            _render_identity_config,
        ),
        TemplateSpec(IDENTITY_USERS, ("ADMIN_USER", "EMAIL", "ADMIN_PASSWORD_HASH"), _render_identity_users),
        TemplateSpec(ENVIRONMENT_FILE, (*ENV_KEYS, *SECRET_NAMES), _render_environment),
        TemplateSpec(
            TOPOLOGY_FILE,
            ("TOPOLOGY", "PROJECT_NAME"),
            _render_topology,
            extra_required=_topology_variables,
        ),
        TemplateSpec(
            MAINTENANCE_SCRIPT,
            ("PROJECT_NAME", "ENV_FILE", "COMPOSE_FILE", "DATA_DIR", "BACKUP_DIR", "RETENTION_DAYS"),
            _render_maintenance_script,
        ),
    )
}


def render(template_id: str, params: Mapping[str, Any]) -> str:
    try:
        spec = TEMPLATES[template_id]
    except KeyError:
        raise ValueError(f"Unknown template: {template_id}") from None
    missing = [key for key in spec.required_keys(params) if params.get(key) in (None, "")]
    if missing:
        raise MissingParameter(template_id, missing)
    return spec.build(params)


def build_params(
    stack: StackParameters,
    secrets: SecretBundle,
    topology: Topology,
    *,
    project_name: str = DEFAULT_PROJECT_NAME,
    admin_password_hash: str | None = None,
    retention_days: int = DEFAULT_RETENTION_DAYS,
) -> dict[str, Any]:
    params: dict[str, Any] = dict(stack.env_items())
    params.update(secrets)
    params.update(
        {
            "TOPOLOGY": topology,
            "PROJECT_NAME": project_name,
            "ENV_FILE": str(stack.env_path),
            "RETENTION_DAYS": str(retention_days),
            "PROXY_NETWORK": topology.networks[0] if topology.networks else "",
        }
    )
    if "postgres" in topology:
        params["DATABASE_SERVICE"] = "postgres"
    sso_route = topology.sso_route()
    if topology.sso_service and sso_route is not None:
        params["SSO_SERVICE"] = topology.sso_service
        params["SSO_SUBDOMAIN"] = sso_route.subdomain
        params["SSO_PORT"] = str(sso_route.port or 9091)
    if admin_password_hash:
        params["ADMIN_PASSWORD_HASH"] = admin_password_hash
    return params


def artifact_paths(stack: StackParameters, topology: Topology) -> list[tuple[str, Path, int]]:
    """Where each template lands on disk, in write order."""
    plan = [
        (ENVIRONMENT_FILE, stack.env_path, MODE_SECRET),
        (PROXY_STATIC, stack.traefik_dir / "traefik.yml", MODE_PUBLIC),
    ]
    if topology.sso_service:
        plan.extend(
            [
                (PROXY_MIDDLEWARE, stack.traefik_dir / "dynamic" / "middlewares.yml", MODE_PUBLIC),
                (IDENTITY_CONFIG, stack.authelia_dir / "configuration.yml", MODE_SECRET),
                (IDENTITY_USERS, stack.users_path, MODE_SECRET),
            ]
        )
    plan.extend(
        [
            (TOPOLOGY_FILE, stack.compose_path, MODE_PUBLIC),
            (MAINTENANCE_SCRIPT, stack.backup_script_path, MODE_SCRIPT),
        ]
    )
    return plan


def plan_artifacts(
    stack: StackParameters,
    params: Mapping[str, Any],
    topology: Topology,
    *,
    only: Iterable[str] | None = None,
) -> list[RenderedArtifact]:
    """Render every artifact before anything is written, so a missing key aborts cleanly."""
    wanted = set(only) if only is not None else None
    artifacts = []
    for template_id, path, mode in artifact_paths(stack, topology):
        if wanted is not None and template_id not in wanted:
            continue
        artifacts.append(RenderedArtifact(template_id, path, render(template_id, params), mode))
    return artifacts


def write_artifact(artifact: RenderedArtifact) -> Path:
    return atomic_write(artifact.path, artifact.content, mode=artifact.mode)


def relocate(artifacts: Iterable[RenderedArtifact], stack: StackParameters, out_dir: Path) -> list[RenderedArtifact]:
    """Map artifact paths under `out_dir` (used by dry-run rendering)."""
    moved = []
    for artifact in artifacts:
        try:
            relative = artifact.path.relative_to(stack.cfg_dir)
        except ValueError:
            relative = Path(artifact.path.name)
        moved.append(RenderedArtifact(artifact.template_id, out_dir / relative, artifact.content, artifact.mode))
    return moved
