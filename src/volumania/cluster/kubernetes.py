"""Kubernetes implementation of the orchestration adapter."""

import asyncio
from typing import Any, Callable, List, Optional

from kubernetes import client
from kubernetes.client.rest import ApiException

from ..config import Config
from ..errors import AlreadyExists, ClusterUnreachable, Conflict, MalformedQuantity
from ..models import AutoScalerPolicy, PolicyResource, Volume, VolumePhase, parse_timestamp
from ..quantity import CapacityQuantity
from .base import OrchestrationAdapter

# API statuses meaning the platform answered but refused the change
REJECTED_STATUSES = (400, 403, 404, 409, 422)


class KubernetesAdapter(OrchestrationAdapter):
    """
    Talks to the Kubernetes API with the official client.

    The client is blocking, so every call runs in a worker thread and is
    bounded by ``timeout`` seconds. A timeout counts as ClusterUnreachable.
    """

    def __init__(
        self,
        core_api: Optional[client.CoreV1Api] = None,
        custom_api: Optional[client.CustomObjectsApi] = None,
        timeout: Optional[float] = None,
        namespace: Optional[str] = None,
    ):
        super().__init__()
        self.core_api = core_api or client.CoreV1Api()
        self.custom_api = custom_api or client.CustomObjectsApi()
        self.timeout = timeout if timeout is not None else Config.CLUSTER_CALL_TIMEOUT
        self.namespace = Config.NAMESPACE if namespace is None else namespace

    async def _call(self, func: Callable, *args, **kwargs) -> Any:
        """
        Run a client call in a thread, bounded by the call timeout.

        Cancellation or a timeout stops the wait, not the worker thread: a
        request already sent may still be applied by the API server after
        this raises. ``_request_timeout`` bounds how long that can take.
        """
        kwargs.setdefault("_request_timeout", self.timeout)
        call_name = getattr(func, "__name__", "kubernetes call")
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(func, *args, **kwargs), timeout=self.timeout
            )
        except ApiException:
            raise
        except asyncio.TimeoutError:
            self.logger.error(
                f"Kubernetes call {call_name} timed out after {self.timeout}s"
            )
            raise ClusterUnreachable(f"{call_name} timed out after {self.timeout}s")
        except Exception as e:
            self.logger.error(f"Kubernetes call {call_name} failed: {e}")
            raise ClusterUnreachable(f"{call_name} failed: {e}") from e

    def _unreachable(self, action: str, e: ApiException) -> ClusterUnreachable:
        self.logger.error(f"Failed to {action}: {e.status} {e.reason}")
        return ClusterUnreachable(f"Failed to {action}: {e.status} {e.reason}")

    def _to_volume(self, pvc) -> Volume:
        metadata = pvc.metadata
        spec = pvc.spec
        annotations = metadata.annotations or {}
        requests = {}
        if spec is not None and spec.resources is not None:
            requests = spec.resources.requests or {}

        size = requests.get("storage") or "0"
        try:
            capacity = CapacityQuantity.parse(size)
        except MalformedQuantity:
            self.logger.warning(
                f"PVC {metadata.namespace}/{metadata.name} has malformed size {size!r}"
            )
            capacity = CapacityQuantity(0)

        phase = getattr(pvc.status, "phase", None)
        try:
            phase = VolumePhase(phase)
        except ValueError:
            phase = VolumePhase.PENDING

        return Volume(
            namespace=metadata.namespace,
            name=metadata.name,
            capacity=capacity,
            used_bytes=0,
            total_bytes=capacity.bytes,
            phase=phase,
            storage_class=(spec.storage_class_name if spec else None) or "default",
            access_modes=list((spec.access_modes if spec else None) or []),
            created_at=parse_timestamp(metadata.creation_timestamp),
            has_autoscaler=annotations.get(Config.AUTOSCALER_ANNOTATION) == "true",
        )

    async def list_volumes(self) -> List[Volume]:
        try:
            if self.namespace:
                response = await self._call(
                    self.core_api.list_namespaced_persistent_volume_claim,
                    namespace=self.namespace,
                )
            else:
                response = await self._call(
                    self.core_api.list_persistent_volume_claim_for_all_namespaces
                )
        except ApiException as e:
            raise self._unreachable("list PVCs", e)

        return [
            self._to_volume(pvc)
            for pvc in response.items
            if pvc.metadata and pvc.metadata.name and pvc.metadata.namespace
        ]

    async def read_volume(self, namespace: str, name: str) -> Optional[Volume]:
        try:
            pvc = await self._call(
                self.core_api.read_namespaced_persistent_volume_claim,
                name=name,
                namespace=namespace,
            )
        except ApiException as e:
            if e.status == 404:
                return None
            raise self._unreachable(f"read PVC {namespace}/{name}", e)

        return self._to_volume(pvc)

    async def write_desired_capacity(self, namespace: str, name: str, capacity: str) -> None:
        body = {"spec": {"resources": {"requests": {"storage": capacity}}}}
        try:
            await self._call(
                self.core_api.patch_namespaced_persistent_volume_claim,
                name=name,
                namespace=namespace,
                body=body,
            )
        except ApiException as e:
            if e.status in REJECTED_STATUSES:
                self.logger.error(
                    f"Resize of PVC {namespace}/{name} to {capacity} rejected: "
                    f"{e.status} {e.reason}"
                )
                raise Conflict(f"Resize to {capacity} rejected: {e.status} {e.reason}")
            raise self._unreachable(f"resize PVC {namespace}/{name}", e)

        self.logger.info(f"Requested {capacity} for PVC {namespace}/{name}")

    async def create_policy_resource(self, policy: AutoScalerPolicy) -> dict:
        body = PolicyResource.body_for(policy)
        try:
            await self._call(
                self.custom_api.create_namespaced_custom_object,
                group=Config.CRD_GROUP,
                version=Config.CRD_VERSION,
                namespace=policy.namespace,
                plural=Config.CRD_PLURAL,
                body=body,
            )
        except ApiException as e:
            if e.status == 409:
                raise AlreadyExists(
                    f"{Config.CRD_KIND} {policy.namespace}/{policy.name} already exists"
                )
            raise self._unreachable(
                f"create {Config.CRD_KIND} {policy.namespace}/{policy.name}", e
            )

        self.logger.info(f"Created {Config.CRD_KIND} {policy.namespace}/{policy.name}")
        return body

    async def _list_resource_bodies(self, namespace: Optional[str] = None) -> List[dict]:
        namespace = namespace or self.namespace
        try:
            if namespace:
                response = await self._call(
                    self.custom_api.list_namespaced_custom_object,
                    group=Config.CRD_GROUP,
                    version=Config.CRD_VERSION,
                    namespace=namespace,
                    plural=Config.CRD_PLURAL,
                )
            else:
                response = await self._call(
                    self.custom_api.list_cluster_custom_object,
                    group=Config.CRD_GROUP,
                    version=Config.CRD_VERSION,
                    plural=Config.CRD_PLURAL,
                )
        except ApiException as e:
            if e.status == 404:
                self.logger.warning(f"{Config.CRD_KIND} CRD is not installed")
                return []
            raise self._unreachable(f"list {Config.CRD_PLURAL}", e)

        return (response or {}).get("items", [])

    async def list_policy_resources(self) -> List[PolicyResource]:
        bodies = await self._list_resource_bodies()
        return [PolicyResource.from_body(body) for body in bodies]

    async def has_scaling_annotation_or_resource(self, namespace: str, name: str) -> bool:
        volume = await self.read_volume(namespace, name)
        if volume is not None and volume.has_autoscaler:
            return True

        for body in await self._list_resource_bodies(namespace):
            if (body.get("spec") or {}).get("pvcName") == name:
                return True
        return False

    async def update_policy_resource_status(self, policy: AutoScalerPolicy) -> None:
        body = {"status": PolicyResource.status_for(policy)}
        try:
            await self._call(
                self.custom_api.patch_namespaced_custom_object_status,
                group=Config.CRD_GROUP,
                version=Config.CRD_VERSION,
                namespace=policy.namespace,
                plural=Config.CRD_PLURAL,
                name=policy.name,
                body=body,
            )
        except ApiException as e:
            if e.status == 404:
                self.logger.debug(
                    f"No {Config.CRD_KIND} {policy.namespace}/{policy.name} to update"
                )
                return
            raise self._unreachable(
                f"update status of {Config.CRD_KIND} {policy.namespace}/{policy.name}", e
            )

    async def delete_policy_resource(self, namespace: str, name: str) -> bool:
        try:
            await self._call(
                self.custom_api.delete_namespaced_custom_object,
                group=Config.CRD_GROUP,
                version=Config.CRD_VERSION,
                namespace=namespace,
                plural=Config.CRD_PLURAL,
                name=name,
            )
        except ApiException as e:
            if e.status == 404:
                return False
            raise self._unreachable(f"delete {Config.CRD_KIND} {namespace}/{name}", e)

        self.logger.info(f"Deleted {Config.CRD_KIND} {namespace}/{name}")
        return True

    async def set_autoscaler_marker(self, namespace: str, name: str, enabled: bool) -> None:
        # A null value removes the annotation
        value = "true" if enabled else None
        body = {"metadata": {"annotations": {Config.AUTOSCALER_ANNOTATION: value}}}
        try:
            await self._call(
                self.core_api.patch_namespaced_persistent_volume_claim,
                name=name,
                namespace=namespace,
                body=body,
            )
        except ApiException as e:
            if e.status == 404:
                return
            raise self._unreachable(f"annotate PVC {namespace}/{name}", e)
