"""The reconciliation engine: per-policy control loops and the policy API."""

import asyncio
import json
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union

from pydantic import ValidationError

from .cluster.base import OrchestrationAdapter
from .config import Config
from .errors import (
    AlreadyExists,
    ClusterUnreachable,
    Conflict,
    DuplicateTarget,
    InvalidRequest,
    MetricsUnavailable,
    NotFound,
    TARGET_VOLUME_MISSING,
    VolumeNotFound,
)
from .metrics.base import UsageSampler
from .models import AutoScalerPolicy, PolicyRequest, PolicyResource, PolicyStatus, utcnow
from .quantity import CapacityQuantity
from .registry import AutoScalerRegistry, policy_from_resource
from .scaler import CapacityScaler
from .store.base import RecordStore

logger = logging.getLogger(__name__)

# Errors from a cluster call that count as a failed reconciliation attempt
TRANSIENT_ERRORS = (ClusterUnreachable, Conflict, asyncio.TimeoutError)


def _reason(error: BaseException) -> str:
    """Failure reason recorded on a policy; timeouts count as unreachable."""
    if isinstance(error, asyncio.TimeoutError):
        return "ClusterUnreachable: call timed out"
    return f"{type(error).__name__}: {error}"


class ReconciliationEngine:
    """
    Runs one independent control loop per autoscaler policy.

    Each loop reconciles its policy, then sleeps for the policy's
    ``checkIntervalSeconds``. A cycle holds the policy's lock, so a cycle
    never overlaps another cycle, a deletion or an enable/disable of the
    same policy. Policies in any status but Inactive are looped, so a policy
    in Error keeps retrying and returns to Active on success.
    """

    def __init__(
        self,
        store: RecordStore,
        adapter: OrchestrationAdapter,
        sampler: UsageSampler,
        registry: Optional[AutoScalerRegistry] = None,
        scaler: Optional[CapacityScaler] = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        failure_threshold: Optional[int] = None,
    ):
        self.store = store
        self.adapter = adapter
        self.sampler = sampler
        self.registry = registry or AutoScalerRegistry(store, adapter)
        self.scaler = scaler or CapacityScaler()
        self._failure_threshold = failure_threshold
        self._clock = clock
        self._sleep = sleep
        self._tasks: Dict[str, asyncio.Task] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        # Policies whose last status write-back to the custom resource failed
        self._unpublished: Set[str] = set()
        self._create_lock = asyncio.Lock()
        self._running = False
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    # Lifecycle

    @property
    def running(self) -> bool:
        return self._running

    @property
    def failure_threshold(self) -> int:
        """Consecutive failed attempts that move a policy to Error."""
        if self._failure_threshold is not None:
            return self._failure_threshold
        return Config.FAILURE_THRESHOLD

    async def start(self):
        """Adopt policies only known to the cluster and start every loop."""
        self._running = True
        await self.sync()
        for policy in self.store.list():
            self._schedule(policy)
        self.logger.info(f"Reconciliation engine started with {len(self._tasks)} loops")

    async def stop(self):
        """Cancel every loop and wait for them to finish."""
        self._running = False
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self.logger.info("Reconciliation engine stopped")

    async def sync(self) -> int:
        """
        Adopt PVCAutoScaler resources that have no local record.

        Returns:
            Number of adopted policies
        """
        try:
            resources = await self.adapter.list_policy_resources()
        except ClusterUnreachable as e:
            self.logger.warning(f"Cluster unreachable, skipping policy sync: {e}")
            return 0

        adopted = 0
        for resource in resources:
            known = self._find_by_identity(resource.identity)
            if known is None and await self.adopt_resource(resource) is not None:
                adopted += 1
        return adopted

    def is_scheduled(self, policy_id: str) -> bool:
        task = self._tasks.get(policy_id)
        return task is not None and not task.done()

    def _lock_for(self, policy_id: str) -> asyncio.Lock:
        lock = self._locks.get(policy_id)
        if lock is None:
            lock = self._locks[policy_id] = asyncio.Lock()
        return lock

    def _schedule(self, policy: AutoScalerPolicy):
        if not self._running or policy.status == PolicyStatus.INACTIVE:
            return
        if self.is_scheduled(policy.id):
            return
        self._tasks[policy.id] = asyncio.create_task(
            self._run(policy.id), name=f"autoscaler-{policy.id}"
        )

    async def _cancel(self, policy_id: str):
        task = self._tasks.pop(policy_id, None)
        if task is None or task is asyncio.current_task():
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    async def _run(self, policy_id: str):
        """The recurring loop of one policy."""
        try:
            while True:
                interval = Config.DEFAULT_CHECK_INTERVAL
                try:
                    policy = await self.reconcile_policy(policy_id)
                    if policy is None or policy.status == PolicyStatus.INACTIVE:
                        self.logger.info(f"Stopping loop of autoscaler {policy_id}")
                        return
                    interval = policy.check_interval_seconds
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    self.logger.error(
                        f"Error in reconciliation loop for autoscaler {policy_id}: {e}",
                        exc_info=True,
                    )
                await self._sleep(interval)
        finally:
            if self._tasks.get(policy_id) is asyncio.current_task():
                del self._tasks[policy_id]

    # Reconciliation

    async def reconcile_policy(self, policy_id: str) -> Optional[AutoScalerPolicy]:
        """
        Run one reconciliation cycle for a policy.

        Returns:
            The updated policy, or None if it no longer exists
        """
        async with self._lock_for(policy_id):
            try:
                policy = self.store.get(policy_id)
            except NotFound:
                return None

            if policy.status == PolicyStatus.INACTIVE:
                return policy

            before = (policy.status, policy.last_scale_time, policy.last_error)
            try:
                updated = await self._cycle(policy, self._clock())
            except Exception as e:
                self.logger.error(
                    f"Unexpected error reconciling {policy.namespace}/{policy.name}: {e}",
                    exc_info=True,
                )
                updated = self._failed(policy, _reason(e))

            # Deleted while the cycle was waiting on the cluster
            if not self.store.exists(policy_id):
                return None

            self.store.put(updated)

        changed = (updated.status, updated.last_scale_time, updated.last_error) != before
        if changed or policy_id in self._unpublished:
            await self._publish_status(updated)
        return updated

    async def _cycle(self, policy: AutoScalerPolicy, now: datetime) -> AutoScalerPolicy:
        key = f"{policy.namespace}/{policy.pvc_name}"

        try:
            volume = await self.adapter.read_volume(policy.namespace, policy.pvc_name)
        except TRANSIENT_ERRORS as e:
            return self._failed(policy, _reason(e))

        if volume is None:
            reason = f"{TARGET_VOLUME_MISSING}: PVC {key} not found"
            self.logger.warning(f"AutoScaler {policy.namespace}/{policy.name}: {reason}")
            return policy.model_copy(
                update={"status": PolicyStatus.ERROR, "last_error": reason}
            )

        try:
            used_bytes, total_bytes = await self.sampler.sample_usage(
                policy.namespace, policy.pvc_name
            )
        except MetricsUnavailable as e:
            self.logger.info(f"Skipping cycle for PVC {key}, metrics unavailable: {e}")
            return policy

        decision = self.scaler.decide_scaling(
            policy=policy,
            current_capacity=volume.capacity,
            used_bytes=used_bytes,
            total_bytes=total_bytes,
            now=now,
        )

        self.logger.info(
            f"Scaling decision for {policy.namespace}/{policy.name}: "
            f"pvc={key}, usage={decision.usage_percent:.1f}%, "
            f"current={decision.current_capacity}, desired={decision.desired_capacity}"
        )

        if not decision.should_scale:
            self.logger.debug(f"No scaling needed for PVC {key}: {decision.reason}")
            return self._succeeded(policy)

        if not self.store.exists(policy.id):
            return policy

        try:
            await self.adapter.write_desired_capacity(
                policy.namespace, policy.pvc_name, decision.desired_capacity.format()
            )
        except TRANSIENT_ERRORS as e:
            return self._failed(policy, _reason(e))

        self.logger.info(f"Scaled PVC {key}: {decision.reason}")
        last_scale_time = now
        if policy.last_scale_time is not None and policy.last_scale_time > now:
            last_scale_time = policy.last_scale_time
        return self._succeeded(policy, last_scale_time=last_scale_time)

    def _succeeded(self, policy: AutoScalerPolicy, **updates) -> AutoScalerPolicy:
        if policy.status == PolicyStatus.ERROR:
            self.logger.info(f"AutoScaler {policy.namespace}/{policy.name} recovered")
        updates.update(
            status=PolicyStatus.ACTIVE,
            consecutive_failures=0,
            last_error=None,
        )
        return policy.model_copy(update=updates)

    def _failed(self, policy: AutoScalerPolicy, reason: str) -> AutoScalerPolicy:
        failures = policy.consecutive_failures + 1
        updates = {"consecutive_failures": failures, "last_error": reason}

        if failures >= self.failure_threshold:
            updates["status"] = PolicyStatus.ERROR
            self.logger.error(
                f"AutoScaler {policy.namespace}/{policy.name} failed {failures} "
                f"consecutive times: {reason}"
            )
        else:
            self.logger.warning(
                f"AutoScaler {policy.namespace}/{policy.name} attempt failed "
                f"({failures}/{self.failure_threshold}): {reason}"
            )
        return policy.model_copy(update=updates)

    async def _publish_status(self, policy: AutoScalerPolicy) -> bool:
        """
        Mirror status to the custom resource.

        A failed write is logged and retried on the policy's next cycle,
        whether or not that cycle changes anything.
        """
        try:
            await self.adapter.update_policy_resource_status(policy)
        except TRANSIENT_ERRORS as e:
            self.logger.warning(
                f"Could not update status of {policy.namespace}/{policy.name}, "
                f"retrying next cycle: {e}"
            )
            self._unpublished.add(policy.id)
            return False
        self._unpublished.discard(policy.id)
        return True

    # Policy API

    async def create_policy(
        self, request: Union[PolicyRequest, Dict[str, Any]]
    ) -> AutoScalerPolicy:
        """
        Validate and create a policy, then start its loop.

        Nothing is written anywhere unless every validation passes.

        Raises:
            InvalidRequest: If the request is malformed or inconsistent
            MalformedQuantity: If a size is not a capacity string
            VolumeNotFound: If the target PVC does not exist
            DuplicateTarget: If the target PVC already has a policy
            ClusterUnreachable: If the target PVC cannot be checked
        """
        if not isinstance(request, PolicyRequest):
            try:
                request = PolicyRequest.model_validate(request)
            except ValidationError as e:
                raise InvalidRequest("Invalid request data", errors=json.loads(e.json())) from e

        min_size = CapacityQuantity.parse(request.min_size)
        max_size = CapacityQuantity.parse(request.max_size)
        step_size = CapacityQuantity.parse(request.step_size)

        if min_size > max_size:
            raise InvalidRequest(
                f"minSize {request.min_size} is greater than maxSize {request.max_size}"
            )
        if step_size.bytes <= 0:
            raise InvalidRequest("stepSize must be greater than zero")

        namespace, pvc_name = request.namespace, request.pvc_name

        async with self._create_lock:
            volume = await self.adapter.read_volume(namespace, pvc_name)
            if volume is None:
                raise VolumeNotFound(namespace, pvc_name)

            try:
                self.store.find_by_target(namespace, pvc_name)
            except NotFound:
                pass
            else:
                raise DuplicateTarget(namespace, pvc_name)

            try:
                if await self.adapter.has_scaling_annotation_or_resource(namespace, pvc_name):
                    raise DuplicateTarget(namespace, pvc_name)
            except ClusterUnreachable as e:
                self.logger.warning(f"Could not check PVC {namespace}/{pvc_name} on cluster: {e}")

            if volume.capacity < min_size:
                raise InvalidRequest(
                    f"PVC {namespace}/{pvc_name} capacity {volume.capacity} "
                    f"is below minSize {request.min_size}"
                )

            policy = AutoScalerPolicy.from_request(request, created_at=self._clock())

            try:
                await self.adapter.create_policy_resource(policy)
            except AlreadyExists:
                raise DuplicateTarget(namespace, pvc_name)
            except ClusterUnreachable as e:
                self.logger.warning(
                    f"Failed to create {Config.CRD_KIND} for {namespace}/{pvc_name}, "
                    f"storing locally only: {e}"
                )

            self.store.put(policy)

        await self._set_marker(namespace, pvc_name, True)
        self._schedule(policy)
        self.logger.info(
            f"Created autoscaler {policy.id} for PVC {namespace}/{pvc_name} "
            f"(step={policy.step_size}, max={policy.max_size}, "
            f"trigger={policy.trigger_above_percent}%)"
        )
        return policy

    async def delete_policy(self, policy_id: str) -> bool:
        """
        Delete a policy, its custom resource and the PVC marker.

        Returns:
            False if no such policy exists
        """
        try:
            policy = self.store.get(policy_id)
        except NotFound:
            return False
        return await self._remove(policy, delete_resource=True)

    async def list_policies(self) -> List[AutoScalerPolicy]:
        return await self.registry.all_policies()

    async def get_policy(self, policy_id: str) -> AutoScalerPolicy:
        """
        Raises:
            NotFound: If no policy has this id
        """
        return await self.registry.get(policy_id)

    async def set_policy_enabled(self, policy_id: str, enabled: bool) -> AutoScalerPolicy:
        """
        Switch a policy between Active and Inactive.

        Raises:
            NotFound: If no policy has this id
        """
        async with self._lock_for(policy_id):
            policy = self.store.get(policy_id)
            if enabled and policy.status == PolicyStatus.INACTIVE:
                policy = policy.model_copy(
                    update={
                        "status": PolicyStatus.ACTIVE,
                        "consecutive_failures": 0,
                        "last_error": None,
                    }
                )
            elif not enabled:
                policy = policy.model_copy(update={"status": PolicyStatus.INACTIVE})
            self.store.put(policy)

        if enabled:
            self._schedule(policy)
        else:
            await self._cancel(policy_id)

        await self._publish_status(policy)
        self.logger.info(
            f"AutoScaler {policy.namespace}/{policy.name} is now {policy.status.value}"
        )
        return policy

    async def adopt_resource(self, resource: PolicyResource) -> Optional[AutoScalerPolicy]:
        """
        Start managing a PVCAutoScaler created directly on the cluster.

        Returns:
            The adopted (or already known) policy, None if it cannot be adopted
        """
        async with self._create_lock:
            known = self._find_by_identity(resource.identity)
            if known is not None:
                return known

            try:
                other = self.store.find_by_target(resource.namespace, resource.pvc_name)
            except NotFound:
                pass
            else:
                self.logger.warning(
                    f"Not adopting {resource.namespace}/{resource.name}: PVC "
                    f"{resource.pvc_name} is already managed by {other.name}"
                )
                return None

            policy = policy_from_resource(resource)
            if policy is None:
                return None
            if self.store.exists(policy.id):
                self.logger.warning(
                    f"Not adopting {resource.namespace}/{resource.name}: "
                    f"autoscaler id {policy.id} is already taken"
                )
                return None
            self.store.put(policy)

        self._schedule(policy)
        self.logger.info(f"Adopted {Config.CRD_KIND} {resource.namespace}/{resource.name}")
        return policy

    async def forget_resource(self, namespace: str, name: str) -> bool:
        """Stop managing the policy whose custom resource was deleted."""
        for policy in self.store.list():
            if policy.namespace == namespace and policy.name == name:
                return await self._remove(policy, delete_resource=False)
        return False

    def _find_by_identity(self, identity: tuple) -> Optional[AutoScalerPolicy]:
        for policy in self.store.list():
            if policy.identity == identity:
                return policy
        return None

    async def _remove(self, policy: AutoScalerPolicy, delete_resource: bool) -> bool:
        # Wait out an in-flight cycle instead of cancelling it; a cancelled
        # PVC write keeps running in its worker thread
        async with self._lock_for(policy.id):
            removed = self.store.delete(policy.id)
        await self._cancel(policy.id)
        self._locks.pop(policy.id, None)
        self._unpublished.discard(policy.id)

        if not removed:
            return False

        if delete_resource:
            try:
                await self.adapter.delete_policy_resource(policy.namespace, policy.name)
            except TRANSIENT_ERRORS as e:
                self.logger.warning(
                    f"Could not delete {Config.CRD_KIND} {policy.namespace}/{policy.name}: {e}"
                )

        await self._set_marker(policy.namespace, policy.pvc_name, False)
        self.logger.info(f"Deleted autoscaler {policy.id} for PVC {policy.namespace}/{policy.pvc_name}")
        return True

    async def _set_marker(self, namespace: str, pvc_name: str, enabled: bool):
        try:
            await self.adapter.set_autoscaler_marker(namespace, pvc_name, enabled)
        except TRANSIENT_ERRORS as e:
            self.logger.warning(
                f"Could not update autoscaler annotation on PVC {namespace}/{pvc_name}: {e}"
            )
