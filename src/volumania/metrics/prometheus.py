"""Prometheus usage sampler."""

from typing import Any, Dict, Optional, Tuple
import asyncio
import aiohttp
import logging
import math

from ..config import Config
from ..errors import MetricsUnavailable
from .base import UsageSampler

logger = logging.getLogger(__name__)

USED_BYTES_METRIC = "kubelet_volume_stats_used_bytes"
CAPACITY_BYTES_METRIC = "kubelet_volume_stats_capacity_bytes"


class PrometheusUsageSampler(UsageSampler):
    """Reads kubelet volume stats scraped by Prometheus."""

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        super().__init__(config)
        self.server_url = self.config.get("serverUrl", Config.PROMETHEUS_URL).rstrip("/")
        self.headers = self.config.get("headers", {})
        self.timeout = self.config.get("timeout", Config.METRIC_FETCH_TIMEOUT)
        self.session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(headers=self.headers)
        return self.session

    @staticmethod
    def build_query(metric: str, namespace: str, name: str) -> str:
        return f'max({metric}{{namespace="{namespace}",persistentvolumeclaim="{name}"}})'

    async def _query(self, query: str) -> float:
        session = await self._get_session()
        url = f"{self.server_url}/api/v1/query"

        self.logger.debug(f"Querying Prometheus: {query}")

        try:
            async with session.get(
                url,
                params={"query": query},
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as response:
                if response.status != 200:
                    self.logger.error(
                        f"Prometheus query failed with status {response.status}"
                    )
                    raise MetricsUnavailable(f"Prometheus returned {response.status}")

                data = await response.json()
        except aiohttp.ClientError as e:
            self.logger.error(f"HTTP error querying Prometheus: {e}")
            raise MetricsUnavailable(str(e)) from e
        except asyncio.TimeoutError as e:
            self.logger.error(f"Prometheus query timed out after {self.timeout}s")
            raise MetricsUnavailable("Prometheus query timed out") from e

        if data.get("status") != "success":
            self.logger.error(f"Prometheus query failed: {data}")
            raise MetricsUnavailable("Prometheus query was not successful")

        results = data.get("data", {}).get("result", [])
        if not results:
            self.logger.warning(f"Prometheus query returned no results: {query}")
            raise MetricsUnavailable("No volume stats reported")

        try:
            value = float(results[0]["value"][1])
        except (ValueError, KeyError, IndexError, TypeError) as e:
            self.logger.error(f"Error parsing Prometheus response: {e}")
            raise MetricsUnavailable("Malformed Prometheus response") from e

        # NaN and +/-Inf are valid Prometheus sample values
        if not math.isfinite(value):
            self.logger.warning(f"Prometheus returned non-finite value {value} for: {query}")
            raise MetricsUnavailable(f"Non-finite volume stat {value}")
        return value

    async def sample_usage(self, namespace: str, name: str) -> Tuple[int, int]:
        used = await self._query(self.build_query(USED_BYTES_METRIC, namespace, name))
        total = await self._query(self.build_query(CAPACITY_BYTES_METRIC, namespace, name))

        self.logger.info(
            f"PVC {namespace}/{name} usage from Prometheus: {int(used)}/{int(total)} bytes"
        )
        return int(used), int(total)

    async def close(self):
        """Close the aiohttp session."""
        if self.session and not self.session.closed:
            await self.session.close()
