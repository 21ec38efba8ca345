from __future__ import annotations

from typing import Iterable, Sequence


class DevpodError(Exception):
    """Base provisioning error."""


class PreconditionFailed(DevpodError):
    """Host or argument state does not allow the operation to start."""


class PortInUse(PreconditionFailed):
    def __init__(self, port: int):
        super().__init__(f"Port {port} is already in use. Stop whatever is listening on it first.")
        self.port = port


class NotInstalled(PreconditionFailed):
    def __init__(self, env_path: str):
        super().__init__(f"Stack is not installed (no parameter file at {env_path}).")
        self.env_path = env_path


class DependencyInstallFailed(DevpodError):
    """Package or container runtime installation failed."""


class EntropyUnavailable(DevpodError):
    """The system random source could not be read."""


class ValidationError(DevpodError):
    """Input rejected before any mutation happened."""


class MissingParameter(ValidationError):
    def __init__(self, template_id: str, keys: Iterable[str]):
        self.template_id = template_id
        self.keys = sorted(set(keys))
        super().__init__(f"{template_id}: missing parameters: {', '.join(self.keys)}")


class ArtifactRejected(ValidationError):
    def __init__(self, template_id: str, detail: str):
        self.template_id = template_id
        self.detail = detail
        message = f"{template_id}: rejected by the orchestrator config check"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class TopologyError(ValidationError):
    """Base for topology validation failures."""


class CyclicDependency(TopologyError):
    def __init__(self, cycle: Sequence[str]):
        self.cycle = list(cycle)
        super().__init__(f"Dependency cycle: {' -> '.join(self.cycle)}")


class DuplicateRoute(TopologyError):
    def __init__(self, subdomain: str, services: Sequence[str]):
        self.subdomain = subdomain
        self.services = list(services)
        super().__init__(f"Route '{subdomain}' is claimed by more than one service: {', '.join(self.services)}")


class UnknownService(TopologyError):
    def __init__(self, name: str, referenced_by: str):
        self.name = name
        self.referenced_by = referenced_by
        super().__init__(f"{referenced_by} references unknown service '{name}'")


class InvalidTopology(TopologyError):
    """Structural problem in a topology declaration."""


class OrchestratorUnavailable(DevpodError):
    """The container orchestrator could not be reached within the retry budget."""


class OrchestratorError(DevpodError):
    def __init__(self, message: str, stderr: str | None = None):
        super().__init__(message)
        self.stderr = stderr


class PartialFailure(DevpodError):
    def __init__(self, failed: Sequence[str], *, total: int, report: object | None = None):
        self.failed = list(failed)
        self.total = total
        self.report = report
        super().__init__(f"{len(self.failed)} of {total} steps failed: {', '.join(self.failed)}")
