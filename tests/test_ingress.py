from unittest.mock import AsyncMock

import pytest

from shipline.config import PipelineConfig
from shipline.errors import ApplyRejected, ClusterPreconditionFailure, ResourceNotFound
from shipline.ingress import IngressBootstrapper
from shipline.models import IngressState
from shipline.simulation import SimulatedCluster

FAST = PipelineConfig(gate_interval=0.01, gate_timeout=1.0)

INGRESS = {
    "apiVersion": "networking.k8s.io/v1",
    "kind": "Ingress",
    "metadata": {"name": "ingress-service", "namespace": "default"},
    "spec": {"ingressClassName": "nginx"},
}


class TestIngressBootstrapper:
    """Test the ingress controller state machine."""

    def setup_method(self):
        self.transitions = []

    async def _record(self, state):
        self.transitions.append(state)

    @pytest.mark.asyncio
    async def test_fresh_install_walks_every_state(self):
        cluster = SimulatedCluster(FAST, controller_ready_after=3, webhook_ready_after=3)
        bootstrapper = IngressBootstrapper(cluster, FAST, on_transition=self._record)

        state = await bootstrapper.ensure()

        assert state == IngressState.webhook_ready
        assert bootstrapper.installed is True
        assert bootstrapper.history == [
            IngressState.absent,
            IngressState.installing,
            IngressState.controller_ready,
            IngressState.webhook_ready,
        ]
        assert self.transitions == bootstrapper.history[1:]
        assert f"apply {FAST.ingress_install_source}" in cluster.events

    @pytest.mark.asyncio
    async def test_preinstalled_controller_still_confirms_gates(self):
        cluster = SimulatedCluster(FAST, ingress_preinstalled=True)
        bootstrapper = IngressBootstrapper(cluster, FAST)

        await bootstrapper.ensure()

        assert bootstrapper.installed is False
        assert bootstrapper.history == [
            IngressState.absent,
            IngressState.controller_ready,
            IngressState.webhook_ready,
        ]
        assert not any(e.startswith("apply http") for e in cluster.events)

    @pytest.mark.asyncio
    async def test_webhook_ready_never_precedes_controller_ready(self):
        # webhook endpoints appear before the controller reports available
        cluster = SimulatedCluster(FAST, controller_ready_after=5, webhook_ready_after=0)
        bootstrapper = IngressBootstrapper(cluster, FAST)

        await bootstrapper.ensure()

        history = bootstrapper.history
        assert history.index(IngressState.controller_ready) < history.index(IngressState.webhook_ready)

    @pytest.mark.asyncio
    async def test_ensure_is_idempotent(self):
        cluster = SimulatedCluster(FAST)
        bootstrapper = IngressBootstrapper(cluster, FAST)
        await bootstrapper.ensure()
        events = list(cluster.events)
        assert await bootstrapper.ensure() == IngressState.webhook_ready
        assert cluster.events == events

    @pytest.mark.asyncio
    async def test_ingress_rejected_until_webhook_ready(self):
        cluster = SimulatedCluster(FAST, webhook_ready_after=2)
        bootstrapper = IngressBootstrapper(cluster, FAST)
        await bootstrapper.install()
        gate_a, gate_b = bootstrapper.gates()
        await gate_a.wait()
        assert bootstrapper.state == IngressState.controller_ready

        with pytest.raises(ApplyRejected) as exc_info:
            await cluster.apply(INGRESS)
        assert "admission webhook" in str(exc_info.value)

        await gate_b.wait()
        assert bootstrapper.state == IngressState.webhook_ready
        result = await cluster.apply(INGRESS)
        assert result.action.value == "created"

    @pytest.mark.asyncio
    async def test_controller_gate_timeout(self):
        config = PipelineConfig(gate_interval=0.01, gate_timeout=0.05)
        cluster = SimulatedCluster(config, controller_ready_after=10_000)
        bootstrapper = IngressBootstrapper(cluster, config)

        with pytest.raises(ClusterPreconditionFailure) as exc_info:
            await bootstrapper.ensure()

        assert bootstrapper.state == IngressState.installing
        assert "ingress-nginx-controller available" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_webhook_gate_timeout(self):
        config = PipelineConfig(gate_interval=0.01, gate_timeout=0.05)
        cluster = SimulatedCluster(config, webhook_ready_after=10_000)
        bootstrapper = IngressBootstrapper(cluster, config)

        with pytest.raises(ClusterPreconditionFailure):
            await bootstrapper.ensure()

        assert bootstrapper.state == IngressState.controller_ready

    @pytest.mark.asyncio
    async def test_install_refused(self):
        cluster = AsyncMock()
        cluster.get.side_effect = ResourceNotFound("get ingressclass/nginx: not found")
        cluster.apply_source.side_effect = ApplyRejected("apply failed", detail="forbidden")
        bootstrapper = IngressBootstrapper(cluster, FAST)

        with pytest.raises(ClusterPreconditionFailure) as exc_info:
            await bootstrapper.install()

        assert exc_info.value.detail == "forbidden"
        assert bootstrapper.state == IngressState.absent

    @pytest.mark.asyncio
    async def test_illegal_transition(self):
        bootstrapper = IngressBootstrapper(SimulatedCluster(FAST), FAST)
        with pytest.raises(RuntimeError):
            await bootstrapper._transition(IngressState.webhook_ready)
