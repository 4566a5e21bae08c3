from unittest.mock import AsyncMock, patch

import pytest

from shipline.builder import ArtifactBuilder
from shipline.errors import BuildFailure, PushFailure, TestFailure
from shipline.models import Artifact, Revision
from shipline.registry import DockerRegistryClient
from shipline.shell import CommandResult, CommandTimeout
from shipline.simulation import SimulatedRegistry

DIGEST = "sha256:" + "ab" * 32


def _result(args, returncode=0, stdout="", stderr=""):
    return CommandResult(args=args, returncode=returncode, stdout=stdout, stderr=stderr)


class TestArtifactBuilder:
    """Test build, test and push sequencing."""

    def setup_method(self):
        self.registry = SimulatedRegistry()
        self.builder = ArtifactBuilder(self.registry)
        self.revision = Revision(id="abc123")
        self.artifacts = [
            Artifact(name="client", repository="acme/multi-client", test_command=["npm", "test"]),
            Artifact(name="server", repository="acme/multi-server"),
            Artifact(name="worker", repository="acme/multi-worker"),
        ]

    @pytest.mark.asyncio
    async def test_builds_and_pushes_both_tags(self):
        built = await self.builder.build_and_push(self.revision, self.artifacts)

        assert [b.name for b in built] == ["client", "server", "worker"]
        assert sorted(self.registry.pushed) == sorted(
            f"acme/multi-{name}:{tag}"
            for name in ("client", "server", "worker")
            for tag in ("latest", "abc123")
        )
        client = built[0]
        assert client.refs == ["acme/multi-client:latest", "acme/multi-client:abc123"]
        assert client.tags.revision == "abc123"

    @pytest.mark.asyncio
    async def test_both_tags_reference_identical_output(self):
        built = await self.builder.build_and_push(self.revision, self.artifacts)
        for artifact in built:
            latest, revision = artifact.refs
            assert self.registry.images[latest] == self.registry.images[revision]
            assert artifact.digests[latest] == artifact.digests[revision]

    @pytest.mark.asyncio
    async def test_tests_run_in_revision_image_before_push(self):
        await self.builder.build_and_push(self.revision, self.artifacts)
        assert self.registry.tested == ["acme/multi-client:abc123"]
        # every build finished before the first push
        first_push = next(i for i, e in enumerate(self.registry.events) if e.startswith("push"))
        assert all(e.startswith("build") for e in self.registry.events[:first_push])

    @pytest.mark.asyncio
    async def test_test_failure_stops_before_push(self):
        self.registry.fail_tests = {"multi-client"}
        with pytest.raises(TestFailure):
            await self.builder.build_and_push(self.revision, self.artifacts)
        assert self.registry.pushed == {}

    @pytest.mark.asyncio
    async def test_build_failure(self):
        self.registry.fail_build = {"server"}
        with pytest.raises(BuildFailure) as exc_info:
            await self.builder.build_and_push(self.revision, self.artifacts)
        assert "server" in str(exc_info.value)
        assert self.registry.pushed == {}

    @pytest.mark.asyncio
    async def test_push_failure(self):
        self.registry.fail_push = {"acme/multi-worker:abc123"}
        with pytest.raises(PushFailure):
            await self.builder.build_and_push(self.revision, self.artifacts)

    @pytest.mark.asyncio
    async def test_diverging_digests_rejected(self):
        registry = AsyncMock()
        registry.build.return_value = "sha256:image"
        registry.push.side_effect = ["sha256:one", "sha256:two"]
        builder = ArtifactBuilder(registry)
        with pytest.raises(PushFailure) as exc_info:
            await builder.build_and_push(self.revision, [Artifact(name="server")])
        assert "different images" in str(exc_info.value)


class TestDockerRegistryClient:
    """Test the docker CLI client with the subprocess seam mocked."""

    def setup_method(self):
        self.client = DockerRegistryClient(docker="docker", timeout=30)
        self.artifact = Artifact(name="server", context="./server", repository="acme/multi-server")

    @pytest.mark.asyncio
    async def test_build_tags_once_and_inspects(self):
        refs = self.artifact.refs(Revision(id="abc123"))
        calls = []

        async def fake_run(args, input=None, timeout=None):
            calls.append(list(args))
            if args[1] == "image":
                return _result(args, stdout="sha256:feed\n")
            return _result(args)

        with patch("shipline.registry.run_command", side_effect=fake_run):
            image_id = await self.client.build(self.artifact, refs)

        assert image_id == "sha256:feed"
        assert calls[0] == [
            "docker", "build", "-f", "./server/Dockerfile",
            "-t", "acme/multi-server:latest", "-t", "acme/multi-server:abc123", "./server",
        ]
        assert calls[1][-1] == "acme/multi-server:abc123"

    @pytest.mark.asyncio
    async def test_build_failure_carries_output(self):
        with patch(
            "shipline.registry.run_command",
            AsyncMock(return_value=_result([], returncode=1, stderr="COPY failed: no such file")),
        ):
            with pytest.raises(BuildFailure) as exc_info:
                await self.client.build(self.artifact, ["acme/multi-server:latest"])
        assert "COPY failed" in exc_info.value.detail

    @pytest.mark.asyncio
    async def test_push_parses_digest(self):
        output = f"abc123: digest: {DIGEST} size: 1570\n"
        with patch("shipline.registry.run_command", AsyncMock(return_value=_result([], stdout=output))):
            digest = await self.client.push("acme/multi-server:abc123")
        assert digest == DIGEST

    @pytest.mark.asyncio
    async def test_push_without_digest_fails(self):
        with patch("shipline.registry.run_command", AsyncMock(return_value=_result([], stdout="done"))):
            with pytest.raises(PushFailure):
                await self.client.push("acme/multi-server:abc123")

    @pytest.mark.asyncio
    async def test_run_tests_failure(self):
        with patch(
            "shipline.registry.run_command",
            AsyncMock(return_value=_result([], returncode=1, stdout="1 failing")),
        ) as mock_run:
            with pytest.raises(TestFailure):
                await self.client.run_tests("acme/multi-client:abc123", ["npm", "test"])
        mock_run.assert_awaited_once_with(
            ["docker", "run", "--rm", "acme/multi-client:abc123", "npm", "test"], timeout=30
        )

    @pytest.mark.asyncio
    async def test_timeout_maps_to_category(self):
        with patch(
            "shipline.registry.run_command",
            AsyncMock(side_effect=CommandTimeout(["docker", "push"], 30)),
        ):
            with pytest.raises(PushFailure) as exc_info:
                await self.client.push("acme/multi-server:abc123")
        assert "timed out" in str(exc_info.value)
