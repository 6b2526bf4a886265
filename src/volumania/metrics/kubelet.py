"""Kubelet summary API usage sampler."""

from typing import Any, Dict, Optional, Tuple
import asyncio
import json
import logging

from kubernetes import client
from kubernetes.client.rest import ApiException

from ..config import Config
from ..errors import MetricsUnavailable
from .base import UsageSampler

logger = logging.getLogger(__name__)


class KubeletUsageSampler(UsageSampler):
    """
    Reads volume stats from the kubelet ``/stats/summary`` endpoint.

    The PVC must be mounted by a scheduled pod; the summary of that pod's
    node is fetched through the API server node proxy.
    """

    def __init__(
        self,
        config: Optional[Dict[str, Any]] = None,
        core_api: Optional[client.CoreV1Api] = None,
    ):
        super().__init__(config)
        self.core_api = core_api or client.CoreV1Api()
        self.timeout = self.config.get("timeout", Config.METRIC_FETCH_TIMEOUT)

    async def _call(self, func, *args, **kwargs):
        kwargs.setdefault("_request_timeout", self.timeout)
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(func, *args, **kwargs), timeout=self.timeout
            )
        except asyncio.TimeoutError as e:
            raise MetricsUnavailable("Kubelet stats request timed out") from e
        except ApiException as e:
            self.logger.error(f"Kubelet stats request failed: {e.status} {e.reason}")
            raise MetricsUnavailable(f"{e.status} {e.reason}") from e
        except Exception as e:
            # urllib3 connection and protocol errors
            self.logger.error(f"Error requesting kubelet stats: {e}")
            raise MetricsUnavailable(str(e)) from e

    async def _find_node(self, namespace: str, name: str) -> str:
        pods = await self._call(self.core_api.list_namespaced_pod, namespace=namespace)
        for pod in pods.items:
            if not pod.spec or not pod.spec.node_name:
                continue
            for volume in pod.spec.volumes or []:
                claim = volume.persistent_volume_claim
                if claim is not None and claim.claim_name == name:
                    return pod.spec.node_name
        raise MetricsUnavailable(f"PVC {namespace}/{name} is not mounted by a scheduled pod")

    async def sample_usage(self, namespace: str, name: str) -> Tuple[int, int]:
        node = await self._find_node(namespace, name)
        # Without _preload_content=False the client returns str() of the
        # decoded JSON, which is not JSON any more
        response = await self._call(
            self.core_api.connect_get_node_proxy_with_path,
            name=node,
            path="stats/summary",
            _preload_content=False,
        )

        try:
            summary = json.loads(response.data)
        except ValueError as e:
            self.logger.error(f"Malformed kubelet summary from node {node}: {e}")
            raise MetricsUnavailable("Malformed kubelet summary") from e

        for pod in summary.get("pods", []):
            for volume in pod.get("volume", []) or []:
                ref = volume.get("pvcRef") or {}
                if ref.get("name") == name and ref.get("namespace") == namespace:
                    used = volume.get("usedBytes")
                    total = volume.get("capacityBytes")
                    if used is None or total is None:
                        break
                    self.logger.info(
                        f"PVC {namespace}/{name} usage from kubelet {node}: {used}/{total} bytes"
                    )
                    return int(used), int(total)

        raise MetricsUnavailable(f"Kubelet on {node} reports no stats for PVC {namespace}/{name}")
