"""Base orchestration adapter interface."""

from abc import ABC, abstractmethod
from typing import List, Optional
import logging

from ..models import AutoScalerPolicy, PolicyResource, Volume

logger = logging.getLogger(__name__)


class OrchestrationAdapter(ABC):
    """
    The narrow view of the cluster that the reconciliation engine depends on.

    Every call may suspend. Implementations raise ``ClusterUnreachable`` when
    the platform cannot be reached or a call times out.
    """

    def __init__(self):
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    @abstractmethod
    async def list_volumes(self) -> List[Volume]:
        """
        List all PVCs visible to the operator.

        Raises:
            ClusterUnreachable: If the cluster cannot be reached
        """
        pass

    @abstractmethod
    async def read_volume(self, namespace: str, name: str) -> Optional[Volume]:
        """
        Read a PVC.

        Returns:
            The volume, or None if it does not exist
        """
        pass

    @abstractmethod
    async def write_desired_capacity(self, namespace: str, name: str, capacity: str) -> None:
        """
        Set the requested storage of a PVC.

        Raises:
            ClusterUnreachable: If the cluster cannot be reached
            Conflict: If the platform rejects the update
        """
        pass

    @abstractmethod
    async def create_policy_resource(self, policy: AutoScalerPolicy) -> dict:
        """
        Create the PVCAutoScaler custom resource for a policy.

        Raises:
            AlreadyExists: If the resource already exists
            ClusterUnreachable: If the cluster cannot be reached
        """
        pass

    @abstractmethod
    async def list_policy_resources(self) -> List[PolicyResource]:
        """
        List PVCAutoScaler custom resources.

        Raises:
            ClusterUnreachable: If the cluster cannot be reached
        """
        pass

    @abstractmethod
    async def has_scaling_annotation_or_resource(self, namespace: str, name: str) -> bool:
        """Whether a PVC is already managed by an autoscaler on the cluster."""
        pass

    @abstractmethod
    async def update_policy_resource_status(self, policy: AutoScalerPolicy) -> None:
        """Write a policy's status back to its custom resource."""
        pass

    @abstractmethod
    async def delete_policy_resource(self, namespace: str, name: str) -> bool:
        """Delete a PVCAutoScaler resource. Returns False if it did not exist."""
        pass

    @abstractmethod
    async def set_autoscaler_marker(self, namespace: str, name: str, enabled: bool) -> None:
        """Set or clear the autoscaler annotation on a PVC."""
        pass

    async def close(self):
        """
        Clean up resources (override if needed).
        """
        pass
