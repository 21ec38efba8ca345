from .credentials import SecretBundle, generate, generate_bundle
from .errors import (
    CyclicDependency,
    DependencyInstallFailed,
    DevpodError,
    DuplicateRoute,
    MissingParameter,
    NotInstalled,
    OrchestratorError,
    OrchestratorUnavailable,
    PartialFailure,
    PortInUse,
    PreconditionFailed,
)
from .lifecycle import HostSettings, StackDriver
from .params import StackParameters
from .render import render
from .topology import Route, ServiceSpec, Topology, load_topology

__all__ = [
    "CyclicDependency",
    "DependencyInstallFailed",
    "DevpodError",
    "DuplicateRoute",
    "HostSettings",
    "MissingParameter",
    "NotInstalled",
    "OrchestratorError",
    "OrchestratorUnavailable",
    "PartialFailure",
    "PortInUse",
    "PreconditionFailed",
    "Route",
    "SecretBundle",
    "ServiceSpec",
    "StackDriver",
    "StackParameters",
    "Topology",
    "generate",
    "generate_bundle",
    "load_topology",
    "render",
]
