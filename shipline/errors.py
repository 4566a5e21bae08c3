"""
Error Taxonomy for shipline.

Every failure a pipeline run can end with maps onto one of the classes in
this module. Each class carries the exit code the operator CLI reports, so
triage can tell a test failure from a rollout timeout without reading logs.

Classes:
    ExitCode: Process exit status per failure category
    PipelineError: Base class for terminal pipeline failures
    UnexpectedFailure: A step failed outside the known categories
    ClusterError: Non-transient error reported by the cluster client
    ResourceNotFound: The requested cluster object does not exist
    ReadinessTimeout: A readiness gate ran out of time

Author: Nosa Omorodion
Version: 0.3.0
"""

from __future__ import annotations

from enum import IntEnum
from typing import Any, List, Optional


class ExitCode(IntEnum):
    """Exit status reported by the operator CLI."""

    success = 0
    unexpected = 1
    test_failure = 2
    build_failure = 3
    push_failure = 4
    cluster_precondition = 5
    apply_rejected = 6
    rollout_timeout = 7
    ingress_timeout = 8
    transient_cluster = 9


class PipelineError(Exception):
    """
    Base exception for failures that terminate a pipeline run.

    Args:
        message: Human readable summary
        detail: Last condition or message observed from the cluster/registry
        targets: Per-target rollout results, when the failure concerns rollouts
    """

    kind = "PipelineError"
    exit_code = ExitCode.unexpected

    def __init__(
        self,
        message: str,
        detail: Optional[str] = None,
        targets: Optional[List[Any]] = None,
    ):
        self.message = message
        self.detail = detail
        self.targets = list(targets or [])
        super().__init__(message)

    def __str__(self) -> str:
        if self.detail and self.detail not in self.message:
            return f"{self.message}: {self.detail}"
        return self.message


class TestFailure(PipelineError):
    """An artifact's test command exited non-zero."""

    __test__ = False
    kind = "TestFailure"
    exit_code = ExitCode.test_failure


class BuildFailure(PipelineError):
    kind = "BuildFailure"
    exit_code = ExitCode.build_failure


class PushFailure(PipelineError):
    kind = "PushFailure"
    exit_code = ExitCode.push_failure


class ClusterPreconditionFailure(PipelineError):
    """Secret reconciliation or ingress controller bootstrap failed."""

    kind = "ClusterPreconditionFailure"
    exit_code = ExitCode.cluster_precondition


class ApplyRejected(PipelineError):
    """The cluster refused a resource (invalid spec or webhook denial)."""

    kind = "ApplyRejected"
    exit_code = ExitCode.apply_rejected


class RolloutTimeout(PipelineError):
    kind = "RolloutTimeout"
    exit_code = ExitCode.rollout_timeout


class IngressProvisioningTimeout(PipelineError):
    """No external address was assigned to the ingress in time."""

    kind = "IngressProvisioningTimeout"
    exit_code = ExitCode.ingress_timeout

    def __init__(self, message: str, elapsed: float, detail: Optional[str] = None):
        self.elapsed = elapsed
        super().__init__(message, detail=detail)


class UnexpectedFailure(PipelineError):
    """A step raised something outside this taxonomy, most likely a bug."""

    kind = "UnexpectedFailure"
    exit_code = ExitCode.unexpected


class TransientClusterError(PipelineError):
    """Network or auth hiccup talking to the cluster; retried while polling."""

    kind = "TransientClusterError"
    exit_code = ExitCode.transient_cluster


class ClusterError(Exception):
    """Non-transient error returned by a cluster command."""

    def __init__(self, message: str, stderr: Optional[str] = None):
        self.message = message
        self.stderr = stderr
        super().__init__(message)


class ResourceNotFound(ClusterError):
    pass


class ReadinessTimeout(Exception):
    """A wait-until loop exhausted its deadline."""

    def __init__(self, gate: str, elapsed: float, last_error: Optional[BaseException] = None):
        self.gate = gate
        self.elapsed = elapsed
        self.last_error = last_error
        message = f"'{gate}' not satisfied after {elapsed:.1f}s"
        if last_error is not None:
            message += f" (last error: {last_error})"
        super().__init__(message)
