"""
Artifact builder/pusher.

Builds each artifact once under both its ``latest`` and revision refs, runs
the artifact's tests inside the revision image, then pushes both refs. The
whole step finishes before the pipeline touches the cluster.
"""

from __future__ import annotations

import logging
from typing import List

from .errors import PushFailure
from .models import Artifact, BuiltArtifact, Revision
from .registry import RegistryClient

logger = logging.getLogger("shipline.builder")


class ArtifactBuilder:
    def __init__(self, registry: RegistryClient):
        self.registry = registry

    async def build_and_push(
        self, revision: Revision, artifacts: List[Artifact]
    ) -> List[BuiltArtifact]:
        """
        Build, test and push every artifact for ``revision``.

        Args:
            revision: Revision whose tag is pushed alongside ``latest``
            artifacts: Artifacts to publish

        Returns:
            List[BuiltArtifact]: One entry per artifact with both digests

        Raises:
            BuildFailure: A build failed
            TestFailure: An artifact's test command failed
            PushFailure: A push failed or the two refs diverged
        """
        built = []
        for artifact in artifacts:
            refs = artifact.refs(revision)
            logger.info(f"Building {artifact.name} as {', '.join(refs)}")
            image_id = await self.registry.build(artifact, refs)
            built.append(
                BuiltArtifact(
                    name=artifact.name,
                    image_id=image_id,
                    tags=artifact.tags(revision),
                    refs=refs,
                )
            )

        for artifact, result in zip(artifacts, built):
            if artifact.test_command:
                logger.info(f"Testing {artifact.name}: {' '.join(artifact.test_command)}")
                await self.registry.run_tests(result.refs[-1], artifact.test_command)

        for result in built:
            for ref in result.refs:
                result.digests[ref] = await self.registry.push(ref)
                logger.info(f"Pushed {ref} ({result.digests[ref]})")
            if len(set(result.digests.values())) != 1:
                raise PushFailure(
                    f"tags of {result.name} point at different images",
                    detail=", ".join(f"{k}={v}" for k, v in result.digests.items()),
                )
        return built
