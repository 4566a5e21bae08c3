"""
Manifest applier: idempotent create-or-patch of declarative resources.

Readiness of what gets applied is not awaited here; Deployments are driven
to completion by the rollout step.
"""

from __future__ import annotations

import logging
from typing import List, Optional

from .cluster import ClusterClient
from .errors import ApplyRejected, ClusterError, PipelineError, TransientClusterError
from .models import ApplyResult, ClusterResource

logger = logging.getLogger("shipline.applier")


class ManifestApplier:
    def __init__(self, cluster: ClusterClient, namespace: Optional[str] = None):
        self.cluster = cluster
        self.namespace = namespace

    async def apply_all(self, resources: List[ClusterResource]) -> List[ApplyResult]:
        """Apply ``resources`` in order; the first rejection stops the step."""
        results = []
        for resource in resources:
            try:
                result = await self.cluster.apply(resource.manifest(self.namespace))
            except (ApplyRejected, TransientClusterError):
                raise
            except (ClusterError, PipelineError) as exc:
                detail = getattr(exc, "detail", None) or getattr(exc, "stderr", None) or str(exc)
                raise ApplyRejected(
                    f"{resource.display_name} was not applied", detail=detail
                ) from exc
            logger.info(f"{resource.display_name} {result.action.value}")
            results.append(result)
        return results
