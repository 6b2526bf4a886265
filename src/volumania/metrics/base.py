"""Base usage sampler interface."""

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Tuple
import logging

logger = logging.getLogger(__name__)


class UsageSampler(ABC):
    """Abstract base class for volume usage samplers."""

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        """
        Initialize the usage sampler.

        Args:
            config: Configuration dictionary for the sampler
        """
        self.config = config or {}
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    @abstractmethod
    async def sample_usage(self, namespace: str, name: str) -> Tuple[int, int]:
        """
        Sample the filesystem usage of a PVC.

        Args:
            namespace: Kubernetes namespace
            name: PVC name

        Returns:
            (used_bytes, total_bytes)

        Raises:
            MetricsUnavailable: If usage cannot be determined this time
        """
        pass

    async def close(self):
        """
        Clean up resources (override if needed).
        """
        pass
