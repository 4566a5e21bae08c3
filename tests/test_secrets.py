import base64
from unittest.mock import AsyncMock

import pytest

from shipline.errors import (
    ClusterError,
    ClusterPreconditionFailure,
    ResourceNotFound,
    TransientClusterError,
)
from shipline.secrets import SecretReconciler, build_secret_manifest
from shipline.simulation import SimulatedCluster


def _decoded(obj, key):
    return base64.b64decode(obj["data"][key]).decode()


class TestBuildSecretManifest:
    def test_opaque_secret_with_encoded_values(self):
        manifest = build_secret_manifest("pgpassword", {"PGPASSWORD": "s3cret"}, "default")
        assert manifest["kind"] == "Secret"
        assert manifest["type"] == "Opaque"
        assert manifest["metadata"] == {"name": "pgpassword", "namespace": "default"}
        assert _decoded(manifest, "PGPASSWORD") == "s3cret"


class TestSecretReconciler:
    """Test secret upserts against the simulated cluster."""

    def setup_method(self):
        self.cluster = SimulatedCluster()
        self.reconciler = SecretReconciler(self.cluster, "default")

    @pytest.mark.asyncio
    async def test_creates_missing_secret(self):
        action = await self.reconciler.reconcile("pgpassword", {"PGPASSWORD": "s3cret"})
        assert action == "created"
        secret = self.cluster.find("Secret", "pgpassword")
        assert _decoded(secret, "PGPASSWORD") == "s3cret"

    @pytest.mark.asyncio
    async def test_existing_secret_is_updated_not_an_error(self):
        await self.reconciler.reconcile("pgpassword", {"PGPASSWORD": "old"})
        action = await self.reconciler.reconcile("pgpassword", {"PGPASSWORD": "new"})
        assert action == "updated"
        assert _decoded(self.cluster.find("Secret", "pgpassword"), "PGPASSWORD") == "new"
        assert self.cluster.events.count("create secret/pgpassword") == 1

    @pytest.mark.asyncio
    async def test_update_keeps_other_keys(self):
        await self.reconciler.reconcile("pgpassword", {"PGPASSWORD": "a", "PGUSER": "postgres"})
        await self.reconciler.reconcile("pgpassword", {"PGPASSWORD": "b"})
        secret = self.cluster.find("Secret", "pgpassword")
        assert _decoded(secret, "PGUSER") == "postgres"
        assert _decoded(secret, "PGPASSWORD") == "b"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "name,data",
        [
            ("pgpassword", {"PGPASSWORD": ""}),
            ("pgpassword", {"bad key": "x"}),
            ("pgpassword", {"PGPASSWORD": None}),
            ("pgpassword", {}),
            ("Bad/Name", {"PGPASSWORD": "x"}),
        ],
    )
    async def test_malformed_input_rejected_before_cluster(self, name, data):
        with pytest.raises(ClusterPreconditionFailure):
            await self.reconciler.reconcile(name, data)
        assert self.cluster.events == []

    @pytest.mark.asyncio
    async def test_concurrent_create_falls_back_to_patch(self):
        cluster = AsyncMock()
        cluster.patch.side_effect = [ResourceNotFound("patch secret/pgpassword: not found"), {}]
        cluster.create.side_effect = ClusterError(
            "create secret/pgpassword: AlreadyExists", stderr='secrets "pgpassword" already exists'
        )
        reconciler = SecretReconciler(cluster, "default")
        assert await reconciler.reconcile("pgpassword", {"PGPASSWORD": "x"}) == "updated"
        assert cluster.patch.await_count == 2

    @pytest.mark.asyncio
    async def test_cluster_refusal_is_precondition_failure(self):
        cluster = SimulatedCluster(reject=["Secret/pgpassword"])
        reconciler = SecretReconciler(cluster, "default")
        with pytest.raises(ClusterPreconditionFailure) as exc_info:
            await reconciler.reconcile("pgpassword", {"PGPASSWORD": "x"})
        assert "pgpassword" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_transient_errors_propagate(self):
        cluster = AsyncMock()
        cluster.patch.side_effect = TransientClusterError("unreachable")
        reconciler = SecretReconciler(cluster, "default")
        with pytest.raises(TransientClusterError):
            await reconciler.reconcile("pgpassword", {"PGPASSWORD": "x"})
