"""
Data Models for shipline.

This module defines the Pydantic models shared by the pipeline controller,
its components, the trigger API and the operator CLI. It covers the revision
being deployed, the artifacts built for it, the cluster resources applied,
the rollout targets driven to completion and the run record that tracks one
pipeline execution.

Classes:
    Revision: Source-commit identity of one pipeline run
    Artifact: A buildable, publishable unit (one per service)
    BuiltArtifact: Result of building and pushing one artifact
    ClusterResource: A declarative object submitted to the cluster
    ApplyResult: Outcome of applying one resource
    SecretSpec: Desired content of one cluster secret
    RolloutTarget: A Deployment plus the image it must adopt
    DeploymentStatus: Observed rollout state of a Deployment
    TargetResult: Per-target rollout outcome
    PipelineRequest: Trigger payload for one run
    StepRecord: State of one pipeline step
    Run: One pipeline execution with status, steps and logs

Author: Nosa Omorodion
Version: 0.3.0
"""

from __future__ import annotations

import re
import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
    computed_field,
    field_validator,
    model_validator,
)

LATEST_TAG = "latest"
_TAG_RE = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}$")


class Revision(BaseModel):
    """
    Identity of one pipeline run.

    The id is content-derived (normally the source commit SHA) and doubles as
    the immutable image tag pushed for every artifact of the run.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    timestamp: datetime = Field(default_factory=datetime.utcnow)

    @field_validator("id")
    @classmethod
    def _validate_id(cls, v: str) -> str:
        v = v.strip()
        if not _TAG_RE.match(v):
            raise ValueError(f"revision id {v!r} is not a valid image tag")
        if v == LATEST_TAG:
            raise ValueError("revision id cannot be the mutable 'latest' tag")
        return v

    @property
    def tag(self) -> str:
        return self.id


class ArtifactTags(BaseModel):
    model_config = ConfigDict(frozen=True)

    latest: str
    revision: str


class Artifact(BaseModel):
    """
    A named, buildable unit of deployable code.

    Attributes:
        name (str): Service name, e.g. ``client``, ``server``, ``worker``
        context (str): Build context directory
        dockerfile (str): Dockerfile path relative to the context
        repository (Optional[str]): Registry repository; defaults to the name
        test_command (Optional[List[str]]): Run inside the image before pushing
        deployment (Optional[str]): Deployment to roll; defaults to ``<name>-deployment``
        container (Optional[str]): Container inside the Deployment; defaults to the name
    """

    name: str = Field(..., min_length=1)
    context: str = "."
    dockerfile: str = "Dockerfile"
    repository: Optional[str] = None
    test_command: Optional[List[str]] = None
    deployment: Optional[str] = None
    container: Optional[str] = None

    @model_validator(mode="after")
    def _fill_defaults(self):
        if not self.repository:
            self.repository = self.name
        if not self.deployment:
            self.deployment = f"{self.name}-deployment"
        if not self.container:
            self.container = self.name
        return self

    def tags(self, revision: Revision) -> ArtifactTags:
        return ArtifactTags(latest=LATEST_TAG, revision=revision.tag)

    def ref(self, tag: str) -> str:
        return f"{self.repository}:{tag}"

    def refs(self, revision: Revision) -> List[str]:
        """Return ``[latest_ref, revision_ref]`` for this artifact."""
        tags = self.tags(revision)
        return [self.ref(tags.latest), self.ref(tags.revision)]


class BuiltArtifact(BaseModel):
    name: str
    image_id: str
    tags: ArtifactTags
    refs: List[str]
    digests: Dict[str, str] = Field(default_factory=dict)


class ClusterResource(BaseModel):
    """
    A declarative object submitted to the cluster.

    ``spec`` holds the full desired manifest document; kind, name and
    namespace are lifted out of it for addressing and reporting.
    """

    kind: str
    name: str
    namespace: Optional[str] = None
    spec: Dict[str, Any]

    @classmethod
    def from_manifest(cls, manifest: Dict[str, Any]) -> "ClusterResource":
        if not isinstance(manifest, dict):
            raise ValueError("manifest must be a mapping")
        kind = manifest.get("kind")
        metadata = manifest.get("metadata") or {}
        name = metadata.get("name")
        if not kind or not name:
            raise ValueError("manifest requires 'kind' and 'metadata.name'")
        return cls(
            kind=kind, name=name, namespace=metadata.get("namespace"), spec=manifest
        )

    def manifest(self, namespace: Optional[str] = None) -> Dict[str, Any]:
        """Return the manifest with the namespace filled in when missing."""
        doc = dict(self.spec)
        metadata = dict(doc.get("metadata") or {})
        ns = self.namespace or namespace
        if ns and "namespace" not in metadata:
            metadata["namespace"] = ns
        doc["metadata"] = metadata
        return doc

    @property
    def display_name(self) -> str:
        return f"{self.kind.lower()}/{self.name}"


class ApplyAction(str, Enum):
    created = "created"
    configured = "configured"
    unchanged = "unchanged"


class ApplyResult(BaseModel):
    kind: str
    name: str
    action: ApplyAction


class SecretSpec(BaseModel):
    """Desired content of one secret; ``env`` maps keys to environment variables."""

    name: str
    values: Dict[str, SecretStr] = Field(default_factory=dict)
    env: Dict[str, str] = Field(default_factory=dict)


class RolloutTarget(BaseModel):
    deployment: str
    container: str
    image: str
    namespace: Optional[str] = None


class DeploymentStatus(BaseModel):
    """Observed status of a Deployment, as reported by the cluster."""

    name: str
    generation: int = 0
    observed_generation: int = 0
    replicas: int = 1
    current_replicas: int = 0
    updated_replicas: int = 0
    ready_replicas: int = 0
    available_replicas: int = 0
    images: Dict[str, str] = Field(default_factory=dict)
    conditions: List[Dict[str, Any]] = Field(default_factory=list)

    @property
    def unready_replicas(self) -> int:
        return max(self.current_replicas - self.ready_replicas, 0)

    @property
    def progress_deadline_exceeded(self) -> bool:
        return any(
            c.get("type") == "Progressing"
            and c.get("reason") == "ProgressDeadlineExceeded"
            for c in self.conditions
        )

    def rollout_complete(
        self, image: Optional[str] = None, container: Optional[str] = None
    ) -> bool:
        """
        True once every desired replica runs the new template and is available.

        With ``container`` the image must be on that container; otherwise any
        container running ``image`` counts.

        Mirrors ``kubectl rollout status``: the controller has observed the
        latest generation, all replicas are updated, no old replicas remain
        and every replica is ready and available.
        """
        if image is not None:
            if container is not None:
                if self.images.get(container) != image:
                    return False
            elif image not in self.images.values():
                return False
        return (
            self.observed_generation >= self.generation
            and self.updated_replicas >= self.replicas
            and self.current_replicas == self.replicas
            and self.ready_replicas >= self.replicas
            and self.available_replicas >= self.replicas
        )

    def summary(self) -> str:
        return (
            f"{self.updated_replicas}/{self.replicas} updated, "
            f"{self.ready_replicas} ready, {self.available_replicas} available, "
            f"{self.current_replicas} total"
        )


class TargetStatus(str, Enum):
    pending = "pending"
    succeeded = "succeeded"
    failed = "failed"


class TargetResult(BaseModel):
    deployment: str
    image: str
    status: TargetStatus = TargetStatus.pending
    message: Optional[str] = None
    elapsed_seconds: Optional[float] = None


class IngressState(str, Enum):
    """
    Bootstrap state of the ingress controller.

    Transitions: absent -> installing -> controller-ready -> webhook-ready.
    A pre-existing controller skips ``installing``.
    """

    absent = "absent"
    installing = "installing"
    controller_ready = "controller-ready"
    webhook_ready = "webhook-ready"


class PipelineRequest(BaseModel):
    """
    Trigger payload for one pipeline run.

    Attributes:
        revision (Revision): Revision being deployed
        artifacts (List[Artifact]): Artifacts to build, push and roll out
        resources (List[ClusterResource]): Base manifests to apply
        secrets (List[SecretSpec]): Secrets to reconcile before applying
        ingress_name (str): Ingress polled for the external address
        concurrent_rollout (bool): Wait on all rollout targets together
    """

    revision: Revision
    artifacts: List[Artifact]
    resources: List[ClusterResource] = Field(default_factory=list)
    secrets: List[SecretSpec] = Field(default_factory=list)
    ingress_name: str = "ingress-service"
    concurrent_rollout: bool = False

    def rollout_targets(
        self, namespace: Optional[str] = None
    ) -> List[RolloutTarget]:
        return [
            RolloutTarget(
                deployment=a.deployment,
                container=a.container,
                image=a.ref(self.revision.tag),
                namespace=namespace,
            )
            for a in self.artifacts
        ]


class StepStatus(str, Enum):
    pending = "pending"
    running = "running"
    succeeded = "succeeded"
    failed = "failed"


class StepRecord(BaseModel):
    name: str
    status: StepStatus = StepStatus.pending
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    error_kind: Optional[str] = None
    message: Optional[str] = None


class RunStatus(str, Enum):
    """
    Lifecycle states of a pipeline run.

    State transitions: pending -> running -> (succeeded|failed). A failed run
    is terminal; nothing is rolled back and recovery is a re-run.
    """

    pending = "pending"
    running = "running"
    succeeded = "succeeded"
    failed = "failed"


class Run(BaseModel):
    """
    One execution of the pipeline for a revision.

    Lifecycle:
        1. Created with status 'pending' and every step 'pending'
        2. Status changes to 'running' when execution begins
        3. Steps run in order; current_step tracks progress
        4. The first failing step sets failed_step, error_kind and exit_code
        5. finished_at is set when the run reaches a terminal status
    """

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    revision: Revision
    status: RunStatus = RunStatus.pending
    steps: List[StepRecord] = Field(default_factory=list)
    current_step: Optional[int] = None
    failed_step: Optional[str] = None
    error_kind: Optional[str] = None
    error_message: Optional[str] = None
    exit_code: Optional[int] = None
    endpoint: Optional[str] = None
    artifacts: List[BuiltArtifact] = Field(default_factory=list)
    applied: List[ApplyResult] = Field(default_factory=list)
    targets: List[TargetResult] = Field(default_factory=list)
    ingress_state: Optional[IngressState] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    logs: List[str] = Field(default_factory=list)

    @computed_field
    @property
    def outcome(self) -> str:
        if self.status == RunStatus.failed and self.failed_step:
            return f"failed-at-step:{self.failed_step}"
        return self.status.value

    def step(self, name: str) -> Optional[StepRecord]:
        for record in self.steps:
            if record.name == name:
                return record
        return None
