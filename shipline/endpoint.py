"""
Endpoint publisher: waits for the ingress to be assigned an external address.
"""

from __future__ import annotations

import logging
from typing import Optional

from .cluster import ClusterClient
from .config import PipelineConfig
from .errors import IngressProvisioningTimeout, ReadinessTimeout, ResourceNotFound
from .waiting import wait_until

logger = logging.getLogger("shipline.endpoint")


class EndpointPublisher:
    def __init__(self, cluster: ClusterClient, config: PipelineConfig, sleep=None):
        self.cluster = cluster
        self.config = config
        self.sleep = sleep

    async def publish(
        self,
        ingress_name: str,
        timeout: Optional[float] = None,
        interval: Optional[float] = None,
    ) -> str:
        """
        Poll ``ingress_name`` until it reports an IP or hostname.

        Args:
            ingress_name: Ingress resource to watch
            timeout: Overall budget; defaults to the configured endpoint timeout
            interval: Poll interval; defaults to the configured endpoint interval

        Returns:
            str: The external address

        Raises:
            IngressProvisioningTimeout: No address appeared within the budget
        """
        address: Optional[str] = None

        async def assigned() -> bool:
            nonlocal address
            try:
                address = await self.cluster.ingress_address(
                    ingress_name, self.config.namespace
                )
            except ResourceNotFound:
                return False
            return bool(address)

        budget = self.config.endpoint_timeout if timeout is None else timeout
        try:
            elapsed = await wait_until(
                assigned,
                name=f"ingress/{ingress_name} address",
                interval=interval or self.config.endpoint_interval,
                timeout=budget,
                sleep=self.sleep,
            )
        except ReadinessTimeout as exc:
            raise IngressProvisioningTimeout(
                f"ingress '{ingress_name}' not provisioned after {exc.elapsed:.0f}s",
                elapsed=exc.elapsed,
                detail=str(exc.last_error) if exc.last_error else None,
            ) from exc
        logger.info(f"ingress/{ingress_name} reachable at {address} after {elapsed:.1f}s")
        return address
