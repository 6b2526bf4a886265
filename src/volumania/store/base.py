"""Base record store interface."""

from abc import ABC, abstractmethod
from typing import List
import logging

from ..errors import NotFound
from ..models import AutoScalerPolicy

logger = logging.getLogger(__name__)


class RecordStore(ABC):
    """
    Keyed storage for autoscaler policies, independent of the cluster.

    All operations are synchronous and atomic with respect to each other.
    Returned policies are copies; mutating them does not change the store.
    """

    def __init__(self):
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    @abstractmethod
    def put(self, policy: AutoScalerPolicy) -> None:
        """Insert or replace a policy, keyed by its id."""
        pass

    @abstractmethod
    def get(self, policy_id: str) -> AutoScalerPolicy:
        """
        Fetch a policy by id.

        Raises:
            NotFound: If no policy has this id
        """
        pass

    @abstractmethod
    def list(self) -> List[AutoScalerPolicy]:
        """All policies in insertion order."""
        pass

    @abstractmethod
    def delete(self, policy_id: str) -> bool:
        """Remove a policy. Returns False if it did not exist."""
        pass

    def find_by_target(self, namespace: str, name: str) -> AutoScalerPolicy:
        """
        Fetch the policy targeting a PVC.

        Raises:
            NotFound: If no policy targets this PVC
        """
        for policy in self.list():
            if policy.namespace == namespace and policy.pvc_name == name:
                return policy
        raise NotFound(f"No autoscaler targets PVC {namespace}/{name}")

    def exists(self, policy_id: str) -> bool:
        try:
            self.get(policy_id)
        except NotFound:
            return False
        return True

    def close(self):
        """
        Clean up resources (override if needed).
        """
        pass
