"""Merged view of autoscaler policies from the record store and the cluster."""

import logging
from typing import Dict, List, Optional, Tuple

from pydantic import ValidationError

from .cluster.base import OrchestrationAdapter
from .errors import ClusterUnreachable, NotFound
from .models import AutoScalerPolicy, PolicyResource, PolicyStatus
from .store.base import RecordStore

logger = logging.getLogger(__name__)

# camelCase request parameter -> policy attribute
PARAMETER_FIELDS = {
    "minSize": "min_size",
    "maxSize": "max_size",
    "stepSize": "step_size",
    "triggerAbovePercent": "trigger_above_percent",
    "checkIntervalSeconds": "check_interval_seconds",
    "cooldownSeconds": "cooldown_seconds",
}


def _resource_status(resource: PolicyResource) -> Optional[PolicyStatus]:
    if not resource.phase:
        return None
    try:
        return PolicyStatus(resource.phase)
    except ValueError:
        logger.warning(
            f"Ignoring unknown phase {resource.phase!r} on "
            f"{resource.namespace}/{resource.name}"
        )
        return None


def merge_policy(local: AutoScalerPolicy, resource: PolicyResource) -> AutoScalerPolicy:
    """
    Combine the two copies of one policy.

    The cluster copy wins for ``status`` and ``lastScaleTime`` and for every
    request parameter it carries; the local record fills in the rest.
    """
    updates = {}
    for key, attr in PARAMETER_FIELDS.items():
        if key in resource.parameters:
            updates[attr] = resource.parameters[key]

    status = _resource_status(resource)
    if status is not None:
        updates["status"] = status
        if status == PolicyStatus.ERROR and resource.message:
            updates["last_error"] = resource.message
    if resource.last_scale_time is not None:
        updates["last_scale_time"] = resource.last_scale_time

    # Re-validate so parameters from the resource are type checked
    data = local.model_dump()
    data.update(updates)
    return AutoScalerPolicy.model_validate(data)


def policy_from_resource(resource: PolicyResource) -> Optional[AutoScalerPolicy]:
    """Build a policy from a resource alone; None if it lacks parameters."""
    missing = [k for k in PARAMETER_FIELDS if k not in resource.parameters]
    if missing or not resource.pvc_name:
        logger.warning(
            f"Skipping {resource.namespace}/{resource.name}: missing "
            f"{', '.join(missing) or 'pvcName'}"
        )
        return None

    data = {attr: resource.parameters[key] for key, attr in PARAMETER_FIELDS.items()}
    data.update(
        id=resource.policy_id,
        name=resource.name,
        namespace=resource.namespace,
        pvc_name=resource.pvc_name,
        status=_resource_status(resource) or PolicyStatus.ACTIVE,
        last_scale_time=resource.last_scale_time,
    )
    if resource.created_at is not None:
        data["created_at"] = resource.created_at
    if data["status"] == PolicyStatus.ERROR:
        data["last_error"] = resource.message

    try:
        return AutoScalerPolicy.model_validate(data)
    except ValidationError as e:
        logger.warning(f"Skipping invalid {resource.namespace}/{resource.name}: {e}")
        return None


def merge_policies(
    local: List[AutoScalerPolicy], resources: List[PolicyResource]
) -> List[AutoScalerPolicy]:
    """
    Union both sources keyed by (namespace, pvcName, name).

    Local policies come first in store order, then cluster-only policies in
    listing order.
    """
    by_identity: Dict[Tuple[str, str, str], PolicyResource] = {}
    for resource in resources:
        by_identity.setdefault(resource.identity, resource)

    merged = []
    seen = set()
    for policy in local:
        resource = by_identity.get(policy.identity)
        if resource is None:
            merged.append(policy)
            continue
        seen.add(policy.identity)
        try:
            merged.append(merge_policy(policy, resource))
        except ValidationError as e:
            logger.warning(
                f"Invalid parameters on {resource.namespace}/{resource.name}, "
                f"using the local record: {e}"
            )
            merged.append(policy)

    for identity, resource in by_identity.items():
        if identity in seen:
            continue
        policy = policy_from_resource(resource)
        if policy is not None:
            merged.append(policy)

    return merged


class AutoScalerRegistry:
    """Reads policies from the record store and the cluster as one view."""

    def __init__(self, store: RecordStore, adapter: OrchestrationAdapter):
        self.store = store
        self.adapter = adapter
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    async def all_policies(self) -> List[AutoScalerPolicy]:
        """
        The merged policy list.

        If the cluster is unreachable, only the store is used and every
        returned policy reports status Unknown.
        """
        local = self.store.list()
        try:
            resources = await self.adapter.list_policy_resources()
        except ClusterUnreachable as e:
            self.logger.warning(f"Cluster unreachable, serving local policies only: {e}")
            return [p.model_copy(update={"status": PolicyStatus.UNKNOWN}) for p in local]

        return merge_policies(local, resources)

    async def get(self, policy_id: str) -> AutoScalerPolicy:
        """
        Look a policy up in the merged view.

        Raises:
            NotFound: If no source knows the id
        """
        for policy in await self.all_policies():
            if policy.id == policy_id:
                return policy
        raise NotFound(f"AutoScaler {policy_id} not found")
