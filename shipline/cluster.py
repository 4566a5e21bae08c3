"""
Cluster API client for shipline.

The pipeline only ever submits desired state: apply (create-or-patch),
strategic/merge patches and creates. It never replaces or deletes, so
concurrent external changes survive where the pipeline does not override
them. Reads cover what the readiness gates need: Deployment status, Service
endpoint counts and the Ingress's external address.

Classes:
    ClusterClient: Abstract interface consumed by every component
    KubectlClusterClient: Implementation that shells out to kubectl

Author: Nosa Omorodion
Version: 0.3.0
"""

from __future__ import annotations

import json
import logging
import re
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import yaml
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .errors import (
    ApplyRejected,
    ClusterError,
    ResourceNotFound,
    TransientClusterError,
)
from .models import ApplyAction, ApplyResult, DeploymentStatus
from .shell import CommandResult, CommandTimeout, run_command

logger = logging.getLogger("shipline.cluster")

_TRANSIENT_MARKERS = (
    "unable to connect to the server",
    "connection refused",
    "connection reset",
    "i/o timeout",
    "tls handshake timeout",
    "context deadline exceeded",
    "the server is currently unable to handle the request",
    "etcdserver: request timed out",
    "net/http: request canceled",
    "unauthorized",
    "you must be logged in",
    "too many requests",
)
_REJECTED_MARKERS = (
    "admission webhook",
    "failed calling webhook",
    "is invalid",
    "error validating",
    "forbidden",
    "denied the request",
)
_APPLY_LINE_RE = re.compile(
    r"^(?P<ref>\S+?)/(?P<name>\S+) (?P<action>created|configured|unchanged)"
)


def classify_failure(result: CommandResult, what: str) -> Exception:
    """Map a failed kubectl invocation onto the error taxonomy."""
    text = result.output
    lowered = text.lower()
    # webhook denials often quote a missing service; they are still rejections
    if "webhook" in lowered:
        return ApplyRejected(f"{what}: rejected by admission webhook", detail=text)
    if "notfound" in lowered or "not found" in lowered:
        return ResourceNotFound(f"{what}: not found", stderr=text)
    if any(marker in lowered for marker in _TRANSIENT_MARKERS):
        return TransientClusterError(f"{what}: cluster unreachable", detail=text)
    if any(marker in lowered for marker in _REJECTED_MARKERS):
        return ApplyRejected(f"{what}: rejected by the cluster", detail=text)
    return ClusterError(f"{what}: {text or f'exit code {result.returncode}'}", stderr=text)


def deployment_status_from_object(obj: Dict[str, Any]) -> DeploymentStatus:
    """Build a DeploymentStatus from a Deployment object as returned by the API."""
    metadata = obj.get("metadata") or {}
    spec = obj.get("spec") or {}
    status = obj.get("status") or {}
    containers = ((spec.get("template") or {}).get("spec") or {}).get("containers") or []
    return DeploymentStatus(
        name=metadata.get("name", ""),
        generation=metadata.get("generation") or 0,
        observed_generation=status.get("observedGeneration") or 0,
        replicas=spec.get("replicas", 1),
        current_replicas=status.get("replicas") or 0,
        updated_replicas=status.get("updatedReplicas") or 0,
        ready_replicas=status.get("readyReplicas") or 0,
        available_replicas=status.get("availableReplicas") or 0,
        images={c.get("name", ""): c.get("image", "") for c in containers},
        conditions=status.get("conditions") or [],
    )


def count_endpoint_addresses(obj: Dict[str, Any]) -> int:
    return sum(len(subset.get("addresses") or []) for subset in obj.get("subsets") or [])


def ingress_address_from_object(obj: Dict[str, Any]) -> Optional[str]:
    entries = ((obj.get("status") or {}).get("loadBalancer") or {}).get("ingress") or []
    for entry in entries:
        address = entry.get("ip") or entry.get("hostname")
        if address:
            return address
    return None


class ClusterClient(ABC):
    """Abstract cluster client interface for dependency injection."""

    @abstractmethod
    async def get(
        self, kind: str, name: str, namespace: Optional[str] = None
    ) -> Dict[str, Any]:
        """Return the live object; raise ResourceNotFound when absent."""

    @abstractmethod
    async def apply(self, manifest: Dict[str, Any]) -> ApplyResult:
        """Create the object if absent, patch it if changed, no-op otherwise."""

    @abstractmethod
    async def apply_source(self, source: str) -> List[ApplyResult]:
        """Apply every object from a manifest URL or file path."""

    @abstractmethod
    async def patch(
        self,
        kind: str,
        name: str,
        namespace: Optional[str],
        patch: Dict[str, Any],
        patch_type: str = "strategic",
    ) -> Dict[str, Any]:
        """Patch a live object; raise ResourceNotFound when absent."""

    @abstractmethod
    async def create(self, manifest: Dict[str, Any]) -> Dict[str, Any]:
        """Create an object."""

    async def deployment_status(self, name: str, namespace: Optional[str]) -> DeploymentStatus:
        return deployment_status_from_object(await self.get("Deployment", name, namespace))

    async def endpoint_count(self, service: str, namespace: Optional[str]) -> int:
        return count_endpoint_addresses(await self.get("Endpoints", service, namespace))

    async def ingress_address(self, name: str, namespace: Optional[str]) -> Optional[str]:
        return ingress_address_from_object(await self.get("Ingress", name, namespace))


class KubectlClusterClient(ClusterClient):
    """
    Cluster client backed by the kubectl binary.

    Single commands that fail with a transient error (network, auth refresh)
    are retried a few times with exponential backoff before surfacing.
    """

    def __init__(
        self,
        kubectl: str = "kubectl",
        context: Optional[str] = None,
        timeout: float = 120.0,
    ):
        self.kubectl = kubectl
        self.context = context
        self.timeout = timeout
        logger.info(
            "kubectl cluster client initialized",
            extra={"props": {"context": context or "current"}},
        )

    def _base_args(self) -> List[str]:
        args = [self.kubectl]
        if self.context:
            args += ["--context", self.context]
        return args

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        retry=retry_if_exception_type(TransientClusterError),
        reraise=True,
    )
    async def _kubectl(self, args: List[str], what: str, input: Optional[str] = None) -> str:
        try:
            result = await run_command(self._base_args() + args, input=input, timeout=self.timeout)
        except CommandTimeout as exc:
            raise TransientClusterError(f"{what}: kubectl timed out", detail=str(exc))
        if not result.ok:
            raise classify_failure(result, what)
        return result.stdout

    @staticmethod
    def _ns_args(namespace: Optional[str]) -> List[str]:
        return ["-n", namespace] if namespace else []

    async def get(self, kind, name, namespace=None):
        out = await self._kubectl(
            ["get", kind, name, *self._ns_args(namespace), "-o", "json"],
            f"get {kind.lower()}/{name}",
        )
        return json.loads(out)

    @staticmethod
    def _parse_apply_output(out: str, default_kind: str = "", default_name: str = "") -> List[ApplyResult]:
        results = []
        for line in out.splitlines():
            match = _APPLY_LINE_RE.match(line.strip())
            if not match:
                continue
            ref = match.group("ref")
            results.append(
                ApplyResult(
                    kind=ref.split(".", 1)[0],
                    name=match.group("name"),
                    action=ApplyAction(match.group("action")),
                )
            )
        if not results and default_kind:
            results.append(
                ApplyResult(kind=default_kind, name=default_name, action=ApplyAction.configured)
            )
        return results

    async def apply(self, manifest):
        kind = manifest.get("kind", "")
        name = (manifest.get("metadata") or {}).get("name", "")
        out = await self._kubectl(
            ["apply", "-f", "-"],
            f"apply {kind.lower()}/{name}",
            input=yaml.safe_dump(manifest, sort_keys=False),
        )
        result = self._parse_apply_output(out, kind, name)[0]
        return ApplyResult(kind=kind, name=name, action=result.action)

    async def apply_source(self, source):
        out = await self._kubectl(["apply", "-f", source], f"apply {source}")
        return self._parse_apply_output(out)

    async def patch(self, kind, name, namespace, patch, patch_type="strategic"):
        out = await self._kubectl(
            [
                "patch", kind, name, *self._ns_args(namespace),
                "--type", patch_type, "-p", json.dumps(patch), "-o", "json",
            ],
            f"patch {kind.lower()}/{name}",
        )
        return json.loads(out)

    async def create(self, manifest):
        kind = manifest.get("kind", "")
        name = (manifest.get("metadata") or {}).get("name", "")
        out = await self._kubectl(
            ["create", "-f", "-", "-o", "json"],
            f"create {kind.lower()}/{name}",
            input=yaml.safe_dump(manifest, sort_keys=False),
        )
        return json.loads(out)
