"""
Secret reconciler.

Upserts a named Opaque secret: a merge patch of its data first, a create
when the secret does not exist yet. An existing secret is never an error and
the newest value always wins.
"""

from __future__ import annotations

import base64
import logging
import re
from typing import Dict, Optional

from .cluster import ClusterClient
from .errors import (
    ClusterError,
    ClusterPreconditionFailure,
    PipelineError,
    ResourceNotFound,
    TransientClusterError,
)

logger = logging.getLogger("shipline.secrets")

_KEY_RE = re.compile(r"^[-._a-zA-Z0-9]+$")


def build_secret_manifest(
    name: str, data: Dict[str, str], namespace: Optional[str] = None
) -> Dict:
    """Return the desired Opaque secret manifest with base64-encoded data."""
    encoded = {
        key: base64.b64encode(value.encode("utf-8")).decode("ascii")
        for key, value in data.items()
    }
    metadata = {"name": name}
    if namespace:
        metadata["namespace"] = namespace
    return {
        "apiVersion": "v1",
        "kind": "Secret",
        "metadata": metadata,
        "type": "Opaque",
        "data": encoded,
    }


class SecretReconciler:
    def __init__(self, cluster: ClusterClient, namespace: Optional[str] = None):
        self.cluster = cluster
        self.namespace = namespace

    @staticmethod
    def validate(name: str, data: Dict[str, str]) -> None:
        if not name or not _KEY_RE.match(name):
            raise ClusterPreconditionFailure(f"invalid secret name {name!r}")
        if not data:
            raise ClusterPreconditionFailure(f"secret '{name}' has no values")
        for key, value in data.items():
            if not _KEY_RE.match(key or ""):
                raise ClusterPreconditionFailure(
                    f"secret '{name}' has malformed key {key!r}"
                )
            if not isinstance(value, str) or value == "":
                raise ClusterPreconditionFailure(
                    f"secret '{name}' has malformed value for key '{key}'"
                )

    async def reconcile(self, name: str, data: Dict[str, str]) -> str:
        """
        Ensure secret ``name`` exists and holds the given values.

        Returns:
            str: ``"updated"`` or ``"created"``

        Raises:
            ClusterPreconditionFailure: Malformed input or the cluster refused it
        """
        self.validate(name, data)
        manifest = build_secret_manifest(name, data, self.namespace)
        data_patch = {"data": manifest["data"]}
        try:
            try:
                await self.cluster.patch(
                    "Secret", name, self.namespace, data_patch, patch_type="merge"
                )
                action = "updated"
            except ResourceNotFound:
                try:
                    await self.cluster.create(manifest)
                    action = "created"
                except ClusterError as exc:
                    if "alreadyexists" not in str(exc).lower().replace(" ", ""):
                        raise
                    # created concurrently between our patch and create
                    await self.cluster.patch(
                        "Secret", name, self.namespace, data_patch, patch_type="merge"
                    )
                    action = "updated"
        except (ClusterError, PipelineError) as exc:
            if isinstance(exc, (ClusterPreconditionFailure, TransientClusterError)):
                raise
            detail = getattr(exc, "detail", None) or getattr(exc, "stderr", None) or str(exc)
            raise ClusterPreconditionFailure(
                f"could not reconcile secret '{name}'", detail=detail
            ) from exc
        logger.info(f"Secret '{name}' {action}", extra={"secret": name, "keys": sorted(data)})
        return action
