"""
In-memory cluster and registry for shipline.

These collaborators stand in for a real cluster and registry when the
pipeline runs with ``--simulate`` (or ``SHIPLINE_SIMULATE=true``) and in the
test suite. The simulated cluster keeps declarative objects, honours
create-or-patch semantics, advances Deployment rollouts one replica at a
time according to their maxSurge/maxUnavailable strategy on every status
read, and mimics an ingress controller whose admission webhook rejects
Ingress objects until it has endpoints.

Classes:
    SimulatedCluster: ClusterClient implementation backed by dictionaries
    SimulatedRegistry: RegistryClient implementation backed by dictionaries

Author: Nosa Omorodion
Version: 0.3.0
"""

from __future__ import annotations

import copy
import hashlib
import json
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from .cluster import ClusterClient
from .config import PipelineConfig
from .errors import (
    ApplyRejected,
    BuildFailure,
    ClusterError,
    PushFailure,
    ResourceNotFound,
    TestFailure,
)
from .models import ApplyAction, ApplyResult, Artifact
from .registry import RegistryClient

Key = Tuple[str, Optional[str], str]

# kinds that are not namespaced in the simulation
_CLUSTER_SCOPED = {"IngressClass", "Namespace", "ClusterRole", "ClusterRoleBinding"}


def _merge(base: Dict[str, Any], patch: Dict[str, Any]) -> Dict[str, Any]:
    """JSON merge patch; lists of named containers are merged by name."""
    merged = copy.deepcopy(base)
    for key, value in patch.items():
        if value is None:
            merged.pop(key, None)
        elif isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        elif key == "containers" and isinstance(value, list) and isinstance(merged.get(key), list):
            by_name = {c.get("name"): c for c in merged[key]}
            for container in value:
                name = container.get("name")
                if name in by_name:
                    by_name[name].update(container)
                else:
                    merged[key].append(copy.deepcopy(container))
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _template_images(obj: Dict[str, Any]) -> Dict[str, str]:
    containers = (((obj.get("spec") or {}).get("template") or {}).get("spec") or {}).get(
        "containers"
    ) or []
    return {c.get("name", ""): c.get("image", "") for c in containers}


class _Rollout:
    """Replica bookkeeping for one simulated Deployment."""

    def __init__(self, replicas: int, images: Dict[str, str]):
        self.pods: List[Dict[str, Any]] = [
            {"images": dict(images), "ready": True} for _ in range(replicas)
        ]
        self.peak_unavailable = 0
        self.peak_pods = replicas

    def ready_count(self) -> int:
        return sum(1 for p in self.pods if p["ready"])

    def advance(self, replicas: int, images: Dict[str, str], surge: int, unavailable: int, stalled: bool) -> None:
        unready = [p for p in self.pods if not p["ready"]]
        if unready:
            if not stalled:
                for pod in unready:
                    pod["ready"] = True
        else:
            old = [p for p in self.pods if p["images"] != images]
            if len(self.pods) < replicas or (old and len(self.pods) < replicas + surge):
                self.pods.append({"images": dict(images), "ready": False})
            elif old and self.ready_count() - 1 >= replicas - unavailable:
                self.pods.remove(old[0])
            elif len(self.pods) > replicas:
                self.pods.remove((old or self.pods)[0])
        self.peak_unavailable = max(self.peak_unavailable, replicas - self.ready_count())
        self.peak_pods = max(self.peak_pods, len(self.pods))


class SimulatedCluster(ClusterClient):
    """
    Dictionary-backed cluster.

    Args:
        config: Pipeline configuration (ingress coordinates)
        ingress_preinstalled: Start with a running ingress controller
        controller_ready_after: Status reads before a fresh controller is available
        webhook_ready_after: Endpoint reads before the admission webhook has endpoints
        ingress_address: Address eventually assigned to every Ingress
        address_after: Ingress reads before the address appears
        stalled_deployments: Deployments whose new replicas never become ready
        reject: ``kind/name`` pairs the API server refuses
        reject_all: Refuse every mutation (e.g. an unhealthy API server)
    """

    def __init__(
        self,
        config: Optional[PipelineConfig] = None,
        ingress_preinstalled: bool = False,
        controller_ready_after: int = 1,
        webhook_ready_after: int = 1,
        ingress_address: Optional[str] = "34.90.1.2",
        address_after: int = 1,
        stalled_deployments: Iterable[str] = (),
        reject: Iterable[str] = (),
        reject_all: bool = False,
    ):
        self.config = config or PipelineConfig()
        self.objects: Dict[Key, Dict[str, Any]] = {}
        self.rollouts: Dict[Key, _Rollout] = {}
        self.events: List[str] = []
        self.controller_ready_after = controller_ready_after
        self.webhook_ready_after = webhook_ready_after
        self.ingress_address_value = ingress_address
        self.address_after = address_after
        self.stalled_deployments: Set[str] = set(stalled_deployments)
        self.reject: Set[str] = {r.lower() for r in reject}
        self.reject_all = reject_all
        self._controller_reads = 0
        self._webhook_reads = 0
        self._ingress_reads: Dict[Key, int] = {}
        self._controller_installed = False
        if ingress_preinstalled:
            self._install_ingress_controller()
            self.controller_ready_after = 0
            self.webhook_ready_after = 0

    # helpers

    def _key(self, kind: str, name: str, namespace: Optional[str]) -> Key:
        if kind in _CLUSTER_SCOPED:
            return (kind, None, name)
        return (kind, namespace or self.config.namespace, name)

    def _check_rejected(self, kind: str, name: str) -> None:
        if self.reject_all or f"{kind}/{name}".lower() in self.reject:
            raise ApplyRejected(
                f"{kind.lower()}/{name}: rejected by the cluster",
                detail=f'{kind} "{name}" is invalid',
            )

    def _webhook_ready(self) -> bool:
        return self._webhook_reads >= self.webhook_ready_after

    def _store(self, manifest: Dict[str, Any]) -> Key:
        kind = manifest["kind"]
        metadata = manifest.get("metadata") or {}
        key = self._key(kind, metadata["name"], metadata.get("namespace"))
        obj = copy.deepcopy(manifest)
        obj.setdefault("metadata", {})["generation"] = 1
        if key[1] is not None:
            obj["metadata"]["namespace"] = key[1]
        self.objects[key] = obj
        if kind == "Deployment":
            replicas = (obj.get("spec") or {}).get("replicas", 1)
            self.rollouts[key] = _Rollout(replicas, _template_images(obj))
        return key

    def _install_ingress_controller(self) -> None:
        ns = self.config.ingress_namespace
        self._store({"apiVersion": "networking.k8s.io/v1", "kind": "IngressClass",
                     "metadata": {"name": self.config.ingress_class}})
        self._store({
            "apiVersion": "apps/v1", "kind": "Deployment",
            "metadata": {"name": self.config.ingress_controller_deployment, "namespace": ns},
            "spec": {"replicas": 1, "template": {"spec": {"containers": [
                {"name": "controller", "image": "registry.k8s.io/ingress-nginx/controller"}
            ]}}},
        })
        self._store({"apiVersion": "v1", "kind": "Service",
                     "metadata": {"name": self.config.ingress_admission_service, "namespace": ns}})
        self._controller_installed = True

    def _is_controller(self, key: Key) -> bool:
        return key == ("Deployment", self.config.ingress_namespace, self.config.ingress_controller_deployment)

    def _deployment_view(self, key: Key) -> Dict[str, Any]:
        obj = copy.deepcopy(self.objects[key])
        spec = obj.get("spec") or {}
        replicas = spec.get("replicas", 1)
        images = _template_images(obj)
        rollout = self.rollouts[key]
        if self._is_controller(key):
            self._controller_reads += 1
            if self._controller_reads <= self.controller_ready_after:
                for pod in rollout.pods:
                    pod["ready"] = False
            else:
                for pod in rollout.pods:
                    pod["ready"] = True
        else:
            strategy = (spec.get("strategy") or {}).get("rollingUpdate") or {}
            rollout.advance(
                replicas,
                images,
                int(strategy.get("maxSurge", 1)),
                int(strategy.get("maxUnavailable", 1)),
                key[2] in self.stalled_deployments,
            )
        ready = rollout.ready_count()
        obj["status"] = {
            "observedGeneration": obj["metadata"]["generation"],
            "replicas": len(rollout.pods),
            "updatedReplicas": sum(1 for p in rollout.pods if p["images"] == images),
            "readyReplicas": ready,
            "availableReplicas": ready,
        }
        return obj

    # ClusterClient

    async def get(self, kind, name, namespace=None):
        if kind == "Endpoints":
            return self._endpoints(name, namespace)
        key = self._key(kind, name, namespace)
        if key not in self.objects:
            raise ResourceNotFound(f"get {kind.lower()}/{name}: not found")
        if kind == "Deployment":
            return self._deployment_view(key)
        obj = copy.deepcopy(self.objects[key])
        if kind == "Ingress":
            reads = self._ingress_reads.get(key, 0) + 1
            self._ingress_reads[key] = reads
            if self.ingress_address_value and reads > self.address_after:
                obj["status"] = {"loadBalancer": {"ingress": [{"ip": self.ingress_address_value}]}}
        return obj

    def _endpoints(self, name: str, namespace: Optional[str]) -> Dict[str, Any]:
        service_key = self._key("Service", name, namespace)
        if service_key not in self.objects:
            raise ResourceNotFound(f"get endpoints/{name}: not found")
        subsets = []
        if name == self.config.ingress_admission_service and self._controller_installed:
            self._webhook_reads += 1
            if self._webhook_ready():
                subsets = [{"addresses": [{"ip": "10.8.0.12"}]}]
        else:
            subsets = [{"addresses": [{"ip": "10.8.1.4"}]}]
        return {"kind": "Endpoints", "metadata": {"name": name}, "subsets": subsets}

    async def apply(self, manifest):
        kind = manifest["kind"]
        metadata = manifest.get("metadata") or {}
        name = metadata["name"]
        self._check_rejected(kind, name)
        if kind == "Ingress" and self._controller_installed and not self._webhook_ready():
            raise ApplyRejected(
                f"ingress/{name}: rejected by admission webhook",
                detail='failed calling webhook "validate.nginx.ingress.kubernetes.io": '
                "no endpoints available for service "
                f'"{self.config.ingress_admission_service}"',
            )
        key = self._key(kind, name, metadata.get("namespace"))
        existing = self.objects.get(key)
        if existing is None:
            self._store(manifest)
            action = ApplyAction.created
        else:
            desired = {k: v for k, v in manifest.items() if k != "metadata"}
            merged = _merge(existing, desired)
            if merged == existing:
                action = ApplyAction.unchanged
            else:
                if merged.get("spec") != existing.get("spec"):
                    merged["metadata"]["generation"] += 1
                self.objects[key] = merged
                action = ApplyAction.configured
        self.events.append(f"apply {kind.lower()}/{name} {action.value}")
        return ApplyResult(kind=kind, name=name, action=action)

    async def apply_source(self, source):
        self._check_rejected("Source", source)
        self._install_ingress_controller()
        self.events.append(f"apply {source}")
        return [
            ApplyResult(kind="IngressClass", name=self.config.ingress_class, action=ApplyAction.created),
            ApplyResult(kind="Deployment", name=self.config.ingress_controller_deployment,
                        action=ApplyAction.created),
            ApplyResult(kind="Service", name=self.config.ingress_admission_service,
                        action=ApplyAction.created),
        ]

    async def patch(self, kind, name, namespace, patch, patch_type="strategic"):
        key = self._key(kind, name, namespace)
        if key not in self.objects:
            raise ResourceNotFound(f"patch {kind.lower()}/{name}: not found")
        self._check_rejected(kind, name)
        existing = self.objects[key]
        merged = _merge(existing, patch)
        if merged.get("spec") != existing.get("spec"):
            merged["metadata"]["generation"] += 1
        self.objects[key] = merged
        self.events.append(f"patch {kind.lower()}/{name}")
        return copy.deepcopy(merged)

    async def create(self, manifest):
        kind = manifest["kind"]
        metadata = manifest.get("metadata") or {}
        name = metadata["name"]
        self._check_rejected(kind, name)
        key = self._key(kind, name, metadata.get("namespace"))
        if key in self.objects:
            raise ClusterError(
                f"create {kind.lower()}/{name}: AlreadyExists",
                stderr=f'{kind.lower()}s "{name}" already exists',
            )
        self._store(manifest)
        self.events.append(f"create {kind.lower()}/{name}")
        return copy.deepcopy(self.objects[key])

    # inspection

    def find(self, kind: str, name: str, namespace: Optional[str] = None) -> Optional[Dict[str, Any]]:
        return self.objects.get(self._key(kind, name, namespace))

    def rollout_for(self, name: str, namespace: Optional[str] = None) -> Optional[_Rollout]:
        return self.rollouts.get(self._key("Deployment", name, namespace))


class SimulatedRegistry(RegistryClient):
    """
    Dictionary-backed build tool and registry.

    Image ids are derived from the artifact's build inputs and the revision
    ref, so every tag produced by one build shares one id and one digest.
    """

    def __init__(
        self,
        fail_build: Iterable[str] = (),
        fail_tests: Iterable[str] = (),
        fail_push: Iterable[str] = (),
    ):
        self.fail_build = set(fail_build)
        self.fail_tests = set(fail_tests)
        self.fail_push = set(fail_push)
        self.images: Dict[str, str] = {}
        self.pushed: Dict[str, str] = {}
        self.tested: List[str] = []
        self.events: List[str] = []

    async def build(self, artifact: Artifact, refs: List[str]) -> str:
        if artifact.name in self.fail_build:
            raise BuildFailure(f"build of {artifact.name} failed", detail="exit status 1")
        payload = json.dumps(
            [artifact.name, artifact.context, artifact.dockerfile, refs[-1]]
        ).encode()
        image_id = "sha256:" + hashlib.sha256(payload).hexdigest()
        for ref in refs:
            self.images[ref] = image_id
        self.events.append(f"build {artifact.name}")
        return image_id

    async def run_tests(self, ref: str, command: List[str]) -> None:
        name = ref.rsplit(":", 1)[0].rsplit("/", 1)[-1]
        self.tested.append(ref)
        if name in self.fail_tests:
            raise TestFailure(f"tests in {ref} failed", detail=f"{' '.join(command)} exited 1")

    async def push(self, ref: str) -> str:
        if ref in self.fail_push or ref not in self.images:
            raise PushFailure(f"push of {ref} failed", detail="denied: requested access to the resource is denied")
        digest = "sha256:" + hashlib.sha256(self.images[ref].encode()).hexdigest()
        self.pushed[ref] = digest
        self.events.append(f"push {ref}")
        return digest
