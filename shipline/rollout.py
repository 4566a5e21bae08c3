"""
Rollout Driver.

Points each target Deployment at its new revision image and waits until the
cluster reports the rollout complete. The patch also pins the rolling update
strategy (surge 0 / max-unavailable 1 by default): the cluster terminates
one old replica, starts its replacement and waits for it to become ready
before touching the next, which bounds peak resource usage on small
clusters at the cost of a slower rollout.

Every target gets its own TargetResult; a timeout on one Deployment never
hides the outcome of the others.

Classes:
    RolloutDriver: Patch-and-wait over a list of RolloutTarget

Author: Nosa Omorodion
Version: 0.3.0
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Dict, List, Optional

from .cluster import ClusterClient, deployment_status_from_object
from .config import PipelineConfig
from .errors import (
    ApplyRejected,
    ClusterError,
    PipelineError,
    ReadinessTimeout,
    ResourceNotFound,
    RolloutTimeout,
)
from .models import DeploymentStatus, RolloutTarget, TargetResult, TargetStatus
from .waiting import wait_until

logger = logging.getLogger("shipline.rollout")


class _RolloutStalled(Exception):
    pass


class RolloutDriver:
    def __init__(self, cluster: ClusterClient, config: PipelineConfig, sleep=None):
        self.cluster = cluster
        self.config = config
        self.sleep = sleep
        self.last_status: Dict[str, DeploymentStatus] = {}

    def image_patch(self, target: RolloutTarget) -> Dict:
        """Strategic merge patch swapping the container image and pinning the strategy."""
        return {
            "spec": {
                "strategy": {
                    "type": "RollingUpdate",
                    "rollingUpdate": {
                        "maxSurge": self.config.max_surge,
                        "maxUnavailable": self.config.max_unavailable,
                    },
                },
                "template": {
                    "spec": {
                        "containers": [
                            {"name": target.container, "image": target.image}
                        ]
                    }
                },
            }
        }

    def _namespace(self, target: RolloutTarget) -> Optional[str]:
        return target.namespace or self.config.namespace

    async def _check_container(self, target: RolloutTarget) -> None:
        """Refuse targets whose container is missing; a patch would add a sidecar."""
        live = deployment_status_from_object(
            await self.cluster.get("Deployment", target.deployment, self._namespace(target))
        )
        if target.container not in live.images:
            found = ", ".join(sorted(live.images)) or "none"
            message = (
                f"deployment/{target.deployment} has no container '{target.container}' "
                f"(containers: {found})"
            )
            raise ApplyRejected(message, detail=message)

    async def patch_target(self, target: RolloutTarget, result: TargetResult) -> bool:
        try:
            await self._check_container(target)
            await self.cluster.patch(
                "Deployment", target.deployment, self._namespace(target), self.image_patch(target)
            )
        except (ClusterError, PipelineError) as exc:
            result.status = TargetStatus.failed
            result.message = getattr(exc, "detail", None) or str(exc)
            logger.error(f"Could not update deployment/{target.deployment}: {result.message}")
            return False
        logger.info(f"deployment/{target.deployment} now references {target.image}")
        return True

    async def wait_target(self, target: RolloutTarget, result: TargetResult) -> bool:
        """Block until the target's rollout completes; record the outcome in ``result``."""
        start = time.monotonic()

        async def complete() -> bool:
            try:
                status = await self.cluster.deployment_status(
                    target.deployment, self._namespace(target)
                )
            except ResourceNotFound:
                return False
            self.last_status[target.deployment] = status
            if status.progress_deadline_exceeded:
                raise _RolloutStalled(f"progress deadline exceeded ({status.summary()})")
            return status.rollout_complete(target.image, target.container)

        try:
            await wait_until(
                complete,
                name=f"rollout of deployment/{target.deployment}",
                interval=self.config.rollout_interval,
                timeout=self.config.rollout_timeout,
                sleep=self.sleep,
            )
        except (ReadinessTimeout, _RolloutStalled, ClusterError, PipelineError) as exc:
            result.status = TargetStatus.failed
            result.elapsed_seconds = time.monotonic() - start
            status = self.last_status.get(target.deployment)
            message = str(exc)
            if status is not None and not isinstance(exc, _RolloutStalled):
                message += f"; last status: {status.summary()}"
            result.message = message
            logger.error(f"Rollout of deployment/{target.deployment} failed: {message}")
            return False
        result.status = TargetStatus.succeeded
        result.elapsed_seconds = time.monotonic() - start
        result.message = "rollout complete"
        logger.info(
            f"Rollout of deployment/{target.deployment} complete in {result.elapsed_seconds:.1f}s"
        )
        return True

    async def roll_out(
        self, targets: List[RolloutTarget], concurrent: bool = False
    ) -> List[TargetResult]:
        """
        Update every target and wait for each rollout to complete.

        Args:
            targets: Deployments and the images they must adopt
            concurrent: Patch all targets, then wait on all of them together.
                Otherwise each target is patched and awaited in turn and the
                first failure leaves the remaining targets pending.

        Returns:
            List[TargetResult]: One succeeded result per target

        Raises:
            RolloutTimeout: A target did not complete in time (carries all results)
            ApplyRejected: A target's patch was refused (carries all results)
        """
        results = [TargetResult(deployment=t.deployment, image=t.image) for t in targets]
        patch_failed = set()

        if concurrent:
            for target, result in zip(targets, results):
                if not await self.patch_target(target, result):
                    patch_failed.add(target.deployment)
            waiting = [
                self.wait_target(t, r)
                for t, r in zip(targets, results)
                if t.deployment not in patch_failed
            ]
            tasks = [asyncio.ensure_future(w) for w in waiting]
            try:
                await asyncio.gather(*tasks)
            except BaseException:
                # an unexpected error in one wait must not leave the others polling
                for task in tasks:
                    task.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)
                raise
        else:
            for target, result in zip(targets, results):
                if not await self.patch_target(target, result):
                    patch_failed.add(target.deployment)
                    break
                if not await self.wait_target(target, result):
                    break

        self._raise_for_failures(results, patch_failed)
        return results

    @staticmethod
    def _raise_for_failures(results: List[TargetResult], patch_failed: set) -> None:
        failed = [r for r in results if r.status == TargetStatus.failed]
        if not failed:
            return
        timed_out = [r for r in failed if r.deployment not in patch_failed]
        detail = "; ".join(f"{r.deployment}: {r.message}" for r in failed)
        if timed_out:
            names = ", ".join(r.deployment for r in timed_out)
            raise RolloutTimeout(f"rollout did not complete for {names}", detail=detail, targets=results)
        names = ", ".join(r.deployment for r in failed)
        raise ApplyRejected(f"image update rejected for {names}", detail=detail, targets=results)
