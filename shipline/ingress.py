"""
Ingress Controller Bootstrapper.

This module makes sure a routing controller is running before any
ingress-dependent resource is applied. A freshly installed controller can
report its Deployment available before its admission webhook has a backend;
applying an Ingress in that window is rejected by the webhook. Two gates are
therefore passed in order:

    gate A: the controller Deployment has at least one available replica
    gate B: the admission webhook Service has at least one ready endpoint

State machine:
    absent -> installing -> controller-ready -> webhook-ready
    absent -> controller-ready -> webhook-ready   (controller already present)

Either gate timing out is a fatal ClusterPreconditionFailure.

Classes:
    IngressBootstrapper: Drives the state machine for one cluster

Author: Nosa Omorodion
Version: 0.3.0
"""

from __future__ import annotations

import logging
from functools import partial
from typing import Awaitable, Callable, List, Optional

from .cluster import ClusterClient
from .config import PipelineConfig
from .errors import (
    ApplyRejected,
    ClusterError,
    ClusterPreconditionFailure,
    PipelineError,
    ReadinessTimeout,
    ResourceNotFound,
    TransientClusterError,
)
from .models import IngressState
from .waiting import ReadinessGate

logger = logging.getLogger("shipline.ingress")

_TRANSITIONS = {
    IngressState.absent: {IngressState.installing, IngressState.controller_ready},
    IngressState.installing: {IngressState.controller_ready},
    IngressState.controller_ready: {IngressState.webhook_ready},
    IngressState.webhook_ready: set(),
}


class IngressBootstrapper:
    """
    Ensures the ingress controller is installed and serving its webhook.

    Attributes:
        state (IngressState): Current bootstrap state
        history (List[IngressState]): Every state entered, in order
        installed (bool): Whether this run submitted the installation manifests
    """

    def __init__(
        self,
        cluster: ClusterClient,
        config: PipelineConfig,
        on_transition: Optional[Callable[[IngressState], Awaitable[None]]] = None,
        sleep=None,
    ):
        self.cluster = cluster
        self.config = config
        self.on_transition = on_transition
        self.sleep = sleep
        self.state = IngressState.absent
        self.history: List[IngressState] = [IngressState.absent]
        self.installed = False

    async def _transition(self, new_state: IngressState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise RuntimeError(
                f"illegal ingress bootstrap transition {self.state.value} -> {new_state.value}"
            )
        logger.info(f"Ingress controller: {self.state.value} -> {new_state.value}")
        self.state = new_state
        self.history.append(new_state)
        if self.on_transition is not None:
            await self.on_transition(new_state)

    async def controller_registered(self) -> bool:
        try:
            await self.cluster.get("IngressClass", self.config.ingress_class)
        except ResourceNotFound:
            return False
        return True

    async def _controller_available(self) -> bool:
        try:
            status = await self.cluster.deployment_status(
                self.config.ingress_controller_deployment, self.config.ingress_namespace
            )
        except ResourceNotFound:
            return False
        return status.available_replicas >= 1

    async def _webhook_has_endpoints(self) -> bool:
        try:
            count = await self.cluster.endpoint_count(
                self.config.ingress_admission_service, self.config.ingress_namespace
            )
        except ResourceNotFound:
            return False
        return count >= 1

    def gates(self) -> List[ReadinessGate]:
        """
        Return gate A (controller available) and gate B (webhook endpoints).

        Passing a gate moves the state machine forward, so the gates must be
        awaited in the order returned.
        """
        return [
            ReadinessGate(
                name=f"deployment/{self.config.ingress_controller_deployment} available",
                predicate=self._controller_available,
                interval=self.config.gate_interval,
                timeout=self.config.gate_timeout,
                on_satisfied=partial(self._transition, IngressState.controller_ready),
            ),
            ReadinessGate(
                name=f"service/{self.config.ingress_admission_service} has endpoints",
                predicate=self._webhook_has_endpoints,
                interval=self.config.gate_interval,
                timeout=self.config.gate_timeout,
                on_satisfied=partial(self._transition, IngressState.webhook_ready),
            ),
        ]

    async def install(self) -> IngressState:
        """
        Submit the controller's installation manifests unless it is registered.

        Raises:
            ClusterPreconditionFailure: The installation was refused
        """
        try:
            if await self.controller_registered():
                logger.info(
                    f"Ingress class '{self.config.ingress_class}' already registered, "
                    "confirming readiness"
                )
                return self.state
            logger.info(
                f"Installing ingress controller from {self.config.ingress_install_source}"
            )
            await self.cluster.apply_source(self.config.ingress_install_source)
        except (ClusterPreconditionFailure, TransientClusterError):
            raise
        except (ClusterError, PipelineError) as exc:
            detail = getattr(exc, "detail", None) or getattr(exc, "stderr", None) or str(exc)
            raise ClusterPreconditionFailure(
                "ingress controller installation failed", detail=detail
            ) from exc
        self.installed = True
        await self._transition(IngressState.installing)
        return self.state

    async def ensure(self) -> IngressState:
        """
        Drive the controller to ``webhook-ready``.

        Returns:
            IngressState: Always ``webhook-ready`` on success

        Raises:
            ClusterPreconditionFailure: Installation failed or a gate timed out
        """
        if self.state == IngressState.webhook_ready:
            return self.state
        await self.install()
        try:
            for gate in self.gates():
                await gate.wait(self.sleep)
        except ReadinessTimeout as exc:
            raise ClusterPreconditionFailure(
                f"ingress controller not ready in state {self.state.value}",
                detail=str(exc),
            ) from exc
        except (ClusterError, ApplyRejected) as exc:
            detail = getattr(exc, "detail", None) or getattr(exc, "stderr", None) or str(exc)
            raise ClusterPreconditionFailure(
                "ingress controller readiness check failed", detail=detail
            ) from exc
        return self.state
