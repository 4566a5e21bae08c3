"""
Image build and registry client for shipline.

Classes:
    RegistryClient: Abstract build/test/push interface
    DockerRegistryClient: Implementation driving the docker CLI

Author: Nosa Omorodion
Version: 0.3.0
"""

from __future__ import annotations

import logging
import os
import re
from abc import ABC, abstractmethod
from typing import List, Optional

from .errors import BuildFailure, PushFailure, TestFailure
from .models import Artifact
from .shell import CommandTimeout, run_command

logger = logging.getLogger("shipline.registry")

_DIGEST_RE = re.compile(r"digest:\s*(sha256:[0-9a-f]{64})")


class RegistryClient(ABC):
    """Abstract interface over the build tool and the artifact registry."""

    @abstractmethod
    async def build(self, artifact: Artifact, refs: List[str]) -> str:
        """Build the artifact once, tagged with every ref; return the image id."""

    @abstractmethod
    async def run_tests(self, ref: str, command: List[str]) -> None:
        """Run ``command`` inside the image; raise TestFailure on non-zero exit."""

    @abstractmethod
    async def push(self, ref: str) -> str:
        """Push one ref; return the registry digest."""


class DockerRegistryClient(RegistryClient):
    """Registry client driving ``docker build``, ``docker run`` and ``docker push``."""

    def __init__(self, docker: str = "docker", timeout: float = 600.0):
        self.docker = docker
        self.timeout = timeout

    async def _docker(self, args: List[str], error_type, what: str):
        try:
            result = await run_command([self.docker, *args], timeout=self.timeout)
        except CommandTimeout as exc:
            raise error_type(f"{what} timed out", detail=str(exc))
        except FileNotFoundError:
            raise error_type(f"{what} failed", detail=f"{self.docker} is not installed")
        if not result.ok:
            raise error_type(f"{what} failed", detail=_tail(result.output))
        return result

    async def build(self, artifact, refs):
        args = ["build", "-f", os.path.join(artifact.context, artifact.dockerfile)]
        for ref in refs:
            args += ["-t", ref]
        args.append(artifact.context)
        await self._docker(args, BuildFailure, f"build of {artifact.name}")
        inspected = await self._docker(
            ["image", "inspect", "--format", "{{.Id}}", refs[-1]],
            BuildFailure,
            f"inspect of {refs[-1]}",
        )
        return inspected.stdout.strip()

    async def run_tests(self, ref, command):
        await self._docker(["run", "--rm", ref, *command], TestFailure, f"tests in {ref}")

    async def push(self, ref):
        result = await self._docker(["push", ref], PushFailure, f"push of {ref}")
        match = _DIGEST_RE.search(result.stdout)
        if not match:
            raise PushFailure(f"push of {ref} reported no digest", detail=_tail(result.stdout))
        return match.group(1)


def _tail(text: str, lines: int = 20) -> Optional[str]:
    if not text:
        return None
    return "\n".join(text.strip().splitlines()[-lines:])
