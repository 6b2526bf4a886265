"""Shared fixtures and in-memory collaborators for unit tests."""

from datetime import datetime, timedelta, timezone

import pytest

from volumania.cluster.base import OrchestrationAdapter
from volumania.errors import AlreadyExists, ClusterUnreachable, MetricsUnavailable
from volumania.metrics.base import UsageSampler
from volumania.engine import ReconciliationEngine
from volumania.models import AutoScalerPolicy, PolicyResource, Volume, VolumePhase
from volumania.quantity import CapacityQuantity
from volumania.store import MemoryRecordStore


class FakeClock:
    """Controllable replacement for ``utcnow``."""

    def __init__(self, start=None):
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now = self.now + timedelta(seconds=seconds)


class FakeCluster(OrchestrationAdapter):
    """Orchestration adapter holding PVCs and PVCAutoScaler bodies in memory."""

    def __init__(self):
        super().__init__()
        self.volumes = {}
        self.resources = []
        self.unreachable = False
        self.write_failures = 0
        self.writes = []
        self.status_updates = []

    def add_volume(self, namespace, name, size, **kwargs):
        capacity = CapacityQuantity.parse(size)
        volume = Volume(
            namespace=namespace,
            name=name,
            capacity=capacity,
            total_bytes=capacity.bytes,
            phase=VolumePhase.BOUND,
            **kwargs,
        )
        self.volumes[(namespace, name)] = volume
        return volume

    def add_resource(self, namespace, name, pvc_name, status=None, **spec):
        body = {
            "metadata": {
                "name": name,
                "namespace": namespace,
                "creationTimestamp": "2026-01-01T00:00:00Z",
            },
            "spec": {"pvcName": pvc_name, **spec},
        }
        if status is not None:
            body["status"] = status
        self.resources.append(body)
        return body

    def _check(self):
        if self.unreachable:
            raise ClusterUnreachable("cluster is down")

    async def list_volumes(self):
        self._check()
        return list(self.volumes.values())

    async def read_volume(self, namespace, name):
        self._check()
        return self.volumes.get((namespace, name))

    async def write_desired_capacity(self, namespace, name, capacity):
        self._check()
        if self.write_failures > 0:
            self.write_failures -= 1
            raise ClusterUnreachable("write failed")
        self.writes.append((namespace, name, capacity))
        volume = self.volumes[(namespace, name)]
        volume.capacity = CapacityQuantity.parse(capacity)
        volume.total_bytes = volume.capacity.bytes

    async def create_policy_resource(self, policy):
        self._check()
        for body in self.resources:
            meta = body["metadata"]
            if (meta["namespace"], meta["name"]) == (policy.namespace, policy.name):
                raise AlreadyExists(policy.name)
        body = PolicyResource.body_for(policy)
        self.resources.append(body)
        return body

    async def list_policy_resources(self):
        self._check()
        return [PolicyResource.from_body(body) for body in self.resources]

    async def has_scaling_annotation_or_resource(self, namespace, name):
        self._check()
        volume = self.volumes.get((namespace, name))
        if volume is not None and volume.has_autoscaler:
            return True
        return any(
            b["metadata"]["namespace"] == namespace and b["spec"].get("pvcName") == name
            for b in self.resources
        )

    async def update_policy_resource_status(self, policy):
        self._check()
        self.status_updates.append((policy.name, policy.status))
        for body in self.resources:
            meta = body["metadata"]
            if (meta["namespace"], meta["name"]) == (policy.namespace, policy.name):
                body["status"] = PolicyResource.status_for(policy)

    async def delete_policy_resource(self, namespace, name):
        self._check()
        before = len(self.resources)
        self.resources = [
            b
            for b in self.resources
            if (b["metadata"]["namespace"], b["metadata"]["name"]) != (namespace, name)
        ]
        return len(self.resources) < before

    async def set_autoscaler_marker(self, namespace, name, enabled):
        self._check()
        volume = self.volumes.get((namespace, name))
        if volume is not None:
            volume.has_autoscaler = enabled


class FakeSampler(UsageSampler):
    """Usage sampler answering from a dict of (used, total) per PVC."""

    def __init__(self):
        super().__init__()
        self.usage = {}

    def set_usage(self, namespace, name, used, total):
        self.usage[(namespace, name)] = (used, total)

    async def sample_usage(self, namespace, name):
        try:
            return self.usage[(namespace, name)]
        except KeyError:
            raise MetricsUnavailable(f"no usage for {namespace}/{name}")


def _policy_request(**overrides):
    request = {
        "name": "data-autoscaler",
        "namespace": "default",
        "pvcName": "data",
        "minSize": "10Gi",
        "maxSize": "100Gi",
        "stepSize": "10Gi",
        "triggerAbovePercent": 80,
        "checkIntervalSeconds": 30,
        "cooldownSeconds": 300,
    }
    request.update(overrides)
    return request


@pytest.fixture
def policy_request():
    """Factory for policy creation requests targeting default/data."""
    return _policy_request


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cluster():
    return FakeCluster()


@pytest.fixture
def sampler():
    return FakeSampler()


@pytest.fixture
def store():
    return MemoryRecordStore()


@pytest.fixture
def make_policy():
    """Factory for stored-shape policies targeting default/data."""

    def factory(**overrides):
        data = {
            "name": "data-autoscaler",
            "namespace": "default",
            "pvc_name": "data",
            "min_size": "10Gi",
            "max_size": "100Gi",
            "step_size": "10Gi",
            "trigger_above_percent": 80,
            "check_interval_seconds": 30,
            "cooldown_seconds": 300,
        }
        data.update(overrides)
        return AutoScalerPolicy(**data)

    return factory


@pytest.fixture
def engine(store, cluster, sampler, clock):
    return ReconciliationEngine(store=store, adapter=cluster, sampler=sampler, clock=clock)
