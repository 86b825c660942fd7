"""Error taxonomy for swarm-handoff.

Fatal errors abort the run (or the reconciliation phase); soft errors are
recorded on the run report and the run continues.

    ConfigError            fatal, raised before any side effect
    ClusterUnreachable     fatal, rerun is safe (creates are idempotent)
    ReadinessTimeoutError  soft unless strict readiness was requested
    AuthError              fatal for reconciliation only
    SubmissionRejected     soft at batch level, recorded per unit
"""

from dataclasses import dataclass, field
from typing import Any


@dataclass
class OrchestratorError(Exception):
    """Base error class for orchestration errors."""

    message: str
    retryable: bool = False
    details: dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        return self.message


@dataclass
class ConfigError(OrchestratorError):
    """Missing or invalid input, unknown dependency or dependency cycle."""

    message: str = "Invalid configuration"


@dataclass
class ClusterCommandError(OrchestratorError):
    """Cluster manager rejected a command for a reason other than exists/not-found."""

    message: str = "Cluster command failed"


@dataclass
class ProvisionError(OrchestratorError):
    """One or more cluster resources could not be created.

    ``failures`` maps ``kind/name`` to the error message, one entry per
    resource that failed. Sibling resources were still attempted.
    """

    message: str = "Resource provisioning failed"
    failures: dict[str, str] = field(default_factory=dict)


@dataclass
class DeployError(OrchestratorError):
    """Stack submission failed."""

    message: str = "Stack deployment failed"
    unit: str | None = None


@dataclass
class SubmissionRejected(DeployError):
    """Cluster manager or control plane rejected the stack definition."""

    message: str = "Stack definition rejected"


@dataclass
class ClusterUnreachable(DeployError):
    """Transport failure talking to the cluster manager."""

    message: str = "Cluster manager unreachable"
    retryable: bool = True


@dataclass
class ReadinessTimeoutError(OrchestratorError):
    """A unit did not report healthy before its readiness timeout."""

    message: str = "Readiness probe timed out"
    unit: str | None = None


@dataclass
class StageFailed(OrchestratorError):
    """One or more units of a deployment stage failed to deploy.

    ``failures`` maps unit name to error message. Dependent stages are not
    started.
    """

    message: str = "Deployment stage failed"
    stage: int = 0
    failures: dict[str, str] = field(default_factory=dict)


@dataclass
class RunCancelled(OrchestratorError):
    """The run was cancelled at a stage boundary."""

    message: str = "Run cancelled"


@dataclass
class AuthError(OrchestratorError):
    """Control plane authentication failed or returned no token."""

    message: str = "Control plane authentication failed"


@dataclass
class ReconcileError(OrchestratorError):
    """Reconciliation could not proceed."""

    message: str = "Reconciliation failed"


@dataclass
class ControlPlaneUnreachable(ReconcileError):
    """Transport failure talking to the control plane API."""

    message: str = "Control plane unreachable"
    retryable: bool = True


def map_http_status(status_code: int, message: str, unit: str | None = None) -> OrchestratorError:
    """Map a control plane HTTP error status to an orchestration error.

    Args:
        status_code: HTTP status code
        message: Error message extracted from the response body
        unit: Unit name the request concerned, if any

    Returns:
        AuthError for 401/403, SubmissionRejected otherwise
    """
    details = {"http_status": status_code, "original_message": message}
    if status_code in (401, 403):
        return AuthError(
            message=f"Authentication failed: {message}" if message else "Authentication failed",
            details=details,
        )
    return SubmissionRejected(
        message=f"HTTP error {status_code}: {message}" if message else f"HTTP error {status_code}",
        retryable=status_code in (502, 503, 504),
        details=details,
        unit=unit,
    )
