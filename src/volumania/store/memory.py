"""In-process record store."""

import threading
from typing import Dict, List

from ..errors import NotFound
from ..models import AutoScalerPolicy
from .base import RecordStore


class MemoryRecordStore(RecordStore):
    """Record store backed by a dict; lost on restart."""

    def __init__(self):
        super().__init__()
        self._lock = threading.RLock()
        # dicts keep insertion order
        self._policies: Dict[str, AutoScalerPolicy] = {}

    def put(self, policy: AutoScalerPolicy) -> None:
        with self._lock:
            self._policies[policy.id] = policy.model_copy(deep=True)

    def get(self, policy_id: str) -> AutoScalerPolicy:
        with self._lock:
            policy = self._policies.get(policy_id)
            if policy is None:
                raise NotFound(f"AutoScaler {policy_id} not found")
            return policy.model_copy(deep=True)

    def list(self) -> List[AutoScalerPolicy]:
        with self._lock:
            return [p.model_copy(deep=True) for p in self._policies.values()]

    def delete(self, policy_id: str) -> bool:
        with self._lock:
            return self._policies.pop(policy_id, None) is not None

    def find_by_target(self, namespace: str, name: str) -> AutoScalerPolicy:
        with self._lock:
            return super().find_by_target(namespace, name)
