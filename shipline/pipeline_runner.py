"""
Pipeline Execution Engine for shipline.

This module sequences one deployment: it builds and pushes the artifacts,
reconciles cluster preconditions, applies the base manifests, rolls the
Deployments onto the new revision and reports the external address. Steps
run strictly one after another; the first failure stops the run.

A failed run is terminal. Nothing that already reached the cluster is
reverted: the run records the failing step, its error kind and the last
condition observed, and recovery is to inspect the cluster and re-run. Every
step is idempotent, so re-running converges.

Steps (in order):
    build             ArtifactBuilder        BuildFailure/TestFailure/PushFailure
    secrets           SecretReconciler       ClusterPreconditionFailure
    ingress-controller IngressBootstrapper   ClusterPreconditionFailure
    apply             ManifestApplier        ApplyRejected
    rollout           RolloutDriver          RolloutTimeout/ApplyRejected
    publish-endpoint  EndpointPublisher      IngressProvisioningTimeout

Classes:
    PipelineStep: One named, idempotent step with optional readiness gates
    PipelineExecutor: Runs the steps for one revision

Author: Nosa Omorodion
Version: 0.3.0
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, List, Optional, Type

from .applier import ManifestApplier
from .builder import ArtifactBuilder
from .cluster import ClusterClient, KubectlClusterClient
from .config import PipelineConfig, Settings, settings
from .endpoint import EndpointPublisher
from .errors import (
    ApplyRejected,
    BuildFailure,
    ClusterError,
    ClusterPreconditionFailure,
    IngressProvisioningTimeout,
    PipelineError,
    ReadinessTimeout,
    RolloutTimeout,
    UnexpectedFailure,
)
from .ingress import IngressBootstrapper
from .models import (
    IngressState,
    PipelineRequest,
    Run,
    RunStatus,
    StepRecord,
    StepStatus,
    TargetResult,
)
from .registry import DockerRegistryClient, RegistryClient
from .rollout import RolloutDriver
from .secrets import SecretReconciler
from .simulation import SimulatedCluster, SimulatedRegistry
from .storage import InMemoryDB, db
from .waiting import ReadinessGate

logger = logging.getLogger("shipline")

STEP_BUILD = "build"
STEP_SECRETS = "secrets"
STEP_INGRESS = "ingress-controller"
STEP_APPLY = "apply"
STEP_ROLLOUT = "rollout"
STEP_ENDPOINT = "publish-endpoint"


@dataclass
class PipelineStep:
    """
    One pipeline step.

    Attributes:
        name: Human readable step name, reported on failure
        action: Idempotent coroutine function performing the step
        failure: Error category used when the step fails outside the taxonomy
        gates: Readiness gates that must hold, in order, after the action
    """

    name: str
    action: Callable[[], Awaitable[None]]
    failure: Type[PipelineError] = ClusterPreconditionFailure
    gates: List[ReadinessGate] = field(default_factory=list)


class PipelineExecutor:
    """Runs the deployment pipeline for one revision at a time."""

    def __init__(
        self,
        config: PipelineConfig,
        cluster: ClusterClient,
        registry: RegistryClient,
        storage: Optional[InMemoryDB] = None,
        sleep=None,
    ):
        """
        Initialize pipeline executor.

        Args:
            config: Immutable configuration threaded through every component
            cluster: Cluster API client
            registry: Build tool and registry client
            storage: Run storage (defaults to global db)
            sleep: Sleep coroutine used by readiness polling
        """
        self.config = config
        self.cluster = cluster
        self.registry = registry
        self.storage = storage or db
        self.sleep = sleep
        logger.info(
            "Pipeline executor initialized",
            extra={"cluster": config.cluster_label, "namespace": config.namespace},
        )

    def validate_request(self, request: PipelineRequest) -> None:
        """
        Validate a pipeline request before anything is built or applied.

        Raises:
            ValueError: If the request cannot be executed
        """
        if not request.artifacts:
            raise ValueError("Pipeline request must contain at least one artifact")
        names = [a.name for a in request.artifacts]
        if len(names) != len(set(names)):
            raise ValueError("Artifact names must be unique")
        deployments = [a.deployment for a in request.artifacts]
        if len(deployments) != len(set(deployments)):
            raise ValueError("Each artifact must roll out a distinct deployment")
        if not request.ingress_name:
            raise ValueError("Pipeline request must name the ingress to publish")
        ingresses = [r.name for r in request.resources if r.kind == "Ingress"]
        if ingresses and request.ingress_name not in ingresses:
            raise ValueError(
                f"Unknown ingress '{request.ingress_name}'; manifests define: {', '.join(ingresses)}"
            )

    async def _log(self, run: Run, msg: str) -> None:
        stamp = datetime.utcnow().strftime("%Y-%m-%dT%H:%M:%SZ")
        run.logs.append(f"{stamp} {msg}")
        self.storage.update_run(run.id, run)

    def build_steps(self, request: PipelineRequest, run: Run) -> List[PipelineStep]:
        """Wire the components for ``request`` into the ordered step list."""
        config = self.config
        builder = ArtifactBuilder(self.registry)
        reconciler = SecretReconciler(self.cluster, config.namespace)
        applier = ManifestApplier(self.cluster, config.namespace)
        driver = RolloutDriver(self.cluster, config, sleep=self.sleep)
        publisher = EndpointPublisher(self.cluster, config, sleep=self.sleep)

        async def on_ingress_transition(state: IngressState) -> None:
            run.ingress_state = state
            await self._log(run, f"Ingress controller is {state.value}")

        bootstrapper = IngressBootstrapper(
            self.cluster, config, on_transition=on_ingress_transition, sleep=self.sleep
        )

        async def build() -> None:
            run.artifacts = await builder.build_and_push(request.revision, request.artifacts)
            for built in run.artifacts:
                await self._log(run, f"Pushed {', '.join(built.refs)} ({built.image_id[:19]})")

        async def secrets() -> None:
            if not request.secrets:
                await self._log(run, "No secrets to reconcile")
            for spec in request.secrets:
                data = {k: v.get_secret_value() for k, v in spec.values.items()}
                action = await reconciler.reconcile(spec.name, data)
                await self._log(run, f"Secret '{spec.name}' {action}")

        async def ingress() -> None:
            run.ingress_state = bootstrapper.state
            await bootstrapper.install()
            if bootstrapper.installed:
                await self._log(run, f"Submitted {config.ingress_install_source}")

        async def apply() -> None:
            run.applied = await applier.apply_all(request.resources)
            for result in run.applied:
                await self._log(run, f"{result.kind.lower()}/{result.name} {result.action.value}")

        async def rollout() -> None:
            targets = request.rollout_targets(config.namespace)
            run.targets = [TargetResult(deployment=t.deployment, image=t.image) for t in targets]
            self.storage.update_run(run.id, run)
            run.targets = await driver.roll_out(targets, concurrent=request.concurrent_rollout)
            for result in run.targets:
                await self._log(
                    run, f"deployment/{result.deployment} rolled out to {result.image}"
                )

        async def publish() -> None:
            run.endpoint = await publisher.publish(request.ingress_name)
            await self._log(run, f"ingress/{request.ingress_name} available at {run.endpoint}")

        return [
            PipelineStep(STEP_BUILD, build, BuildFailure),
            PipelineStep(STEP_SECRETS, secrets, ClusterPreconditionFailure),
            PipelineStep(
                STEP_INGRESS, ingress, ClusterPreconditionFailure, gates=bootstrapper.gates()
            ),
            PipelineStep(STEP_APPLY, apply, ApplyRejected),
            PipelineStep(STEP_ROLLOUT, rollout, RolloutTimeout),
            PipelineStep(STEP_ENDPOINT, publish, IngressProvisioningTimeout),
        ]

    def _as_pipeline_error(self, step: PipelineStep, exc: Exception) -> PipelineError:
        if isinstance(exc, PipelineError):
            return exc
        if isinstance(exc, ReadinessTimeout):
            message, detail = f"{step.name} not ready", str(exc)
        elif isinstance(exc, ClusterError):
            message, detail = f"{step.name} failed", exc.stderr or exc.message
        else:
            return UnexpectedFailure(
                f"{step.name} failed unexpectedly", detail=f"{type(exc).__name__}: {exc}"
            )
        if step.failure is IngressProvisioningTimeout:
            elapsed = exc.elapsed if isinstance(exc, ReadinessTimeout) else 0.0
            return IngressProvisioningTimeout(message, elapsed=elapsed, detail=detail)
        return step.failure(message, detail=detail)

    async def execute_step(self, run: Run, step: PipelineStep, index: int) -> None:
        """
        Execute a single step and its readiness gates.

        Raises:
            PipelineError: The step failed; the run must stop
        """
        record = run.steps[index]
        record.status = StepStatus.running
        record.started_at = datetime.utcnow()
        run.current_step = index
        await self._log(run, f"[step {index + 1}] Starting '{step.name}'")
        logger.info(
            f"Executing step {index + 1}: {step.name}",
            extra={"step_name": step.name, "step_index": index, "run_id": run.id,
                   "revision": run.revision.id},
        )
        try:
            await step.action()
            for gate in step.gates:
                await self._log(run, f"Waiting for {gate.name} (timeout {gate.timeout:.0f}s)")
                await gate.wait(self.sleep)
                await self._log(run, f"{gate.name}: satisfied after {gate.elapsed:.1f}s")
        except Exception as exc:
            error = self._as_pipeline_error(step, exc)
            record.status = StepStatus.failed
            record.finished_at = datetime.utcnow()
            record.error_kind = error.kind
            record.message = str(error)
            run.failed_step = step.name
            await self._log(run, f"Step '{step.name}' failed: {error.kind}: {error}")
            logger.error(
                f"Step '{step.name}' failed: {error}",
                extra={"step_name": step.name, "run_id": run.id, "error_kind": error.kind},
            )
            if error is exc:
                raise
            raise error from exc
        record.status = StepStatus.succeeded
        record.finished_at = datetime.utcnow()
        await self._log(run, f"Step '{step.name}' completed successfully")

    async def run_pipeline(self, request: PipelineRequest, run: Optional[Run] = None) -> Run:
        """
        Execute the whole pipeline for ``request``.

        Args:
            request: Revision, artifacts, manifests and secrets to deploy
            run: Run record to update (created and stored when omitted)

        Returns:
            Run: The terminal run record; ``run.outcome`` is ``succeeded`` or
            ``failed-at-step:<name>``

        Raises:
            ValueError: If the request is invalid (nothing has been executed)
        """
        self.validate_request(request)
        if run is None:
            run = self.storage.create_run(Run(revision=request.revision))
        steps = self.build_steps(request, run)
        run.steps = [StepRecord(name=step.name) for step in steps]
        run.status = RunStatus.running
        run.started_at = datetime.utcnow()
        self.storage.update_run(run.id, run)
        await self._log(
            run,
            f"Deploying revision {request.revision.id} to {self.config.cluster_label} "
            f"(namespace {self.config.namespace})",
        )
        try:
            for idx, step in enumerate(steps):
                await self.execute_step(run, step, idx)
            run.status = RunStatus.succeeded
            run.exit_code = 0
            logger.info(
                "Pipeline execution succeeded",
                extra={"run_id": run.id, "revision": run.revision.id, "endpoint": run.endpoint},
            )
        except PipelineError as exc:
            run.status = RunStatus.failed
            run.error_kind = exc.kind
            run.error_message = str(exc)
            run.exit_code = int(exc.exit_code)
            if exc.targets:
                run.targets = exc.targets
            await self._log(run, f"ERROR: {exc}")
            await self._log(
                run,
                "No automatic rollback was performed; inspect the cluster and re-run",
            )
            logger.error(
                f"Pipeline execution failed at step '{run.failed_step}': {exc}",
                extra={"run_id": run.id, "revision": run.revision.id, "error_kind": exc.kind},
            )
        finally:
            run.finished_at = datetime.utcnow()
            self.storage.update_run(run.id, run)
            logger.info(
                "Pipeline execution completed",
                extra={"run_id": run.id, "outcome": run.outcome},
            )
        return run


def create_executor(
    app_settings: Optional[Settings] = None, storage: Optional[InMemoryDB] = None
) -> PipelineExecutor:
    """Build an executor wired to kubectl/docker, or to the simulation."""
    app_settings = app_settings or settings
    config = app_settings.pipeline_config()
    if app_settings.simulate:
        cluster: ClusterClient = SimulatedCluster(config)
        registry: RegistryClient = SimulatedRegistry()
    else:
        cluster = KubectlClusterClient(
            app_settings.kubectl, app_settings.kube_context, app_settings.command_timeout
        )
        registry = DockerRegistryClient(app_settings.docker, app_settings.command_timeout)
    return PipelineExecutor(config, cluster, registry, storage=storage)


async def run_pipeline(request: PipelineRequest, run: Optional[Run] = None) -> Run:
    """
    Run the pipeline with an executor built from the process settings.

    Args:
        request: The deployment to perform
        run: The run instance to track execution
    """
    executor = create_executor()
    return await executor.run_pipeline(request, run)
