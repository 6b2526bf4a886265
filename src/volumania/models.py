"""Data model: volumes, autoscaler policies and policy resources."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator
from pydantic.alias_generators import to_camel

from .config import Config
from .quantity import CapacityQuantity


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an RFC 3339 timestamp as found in Kubernetes objects."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        ts = value
    else:
        ts = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


class VolumePhase(str, Enum):
    BOUND = "Bound"
    PENDING = "Pending"
    LOST = "Lost"


class PolicyStatus(str, Enum):
    ACTIVE = "Active"
    INACTIVE = "Inactive"
    ERROR = "Error"
    # Only ever reported by degraded registry reads, never persisted
    UNKNOWN = "Unknown"


@dataclass
class Volume:
    """A PersistentVolumeClaim as seen by the operator."""

    namespace: str
    name: str
    capacity: CapacityQuantity
    used_bytes: int = 0
    total_bytes: int = 0
    phase: VolumePhase = VolumePhase.PENDING
    storage_class: str = "default"
    access_modes: List[str] = field(default_factory=list)
    created_at: Optional[datetime] = None
    has_autoscaler: bool = False

    def __post_init__(self):
        self.used_bytes = max(0, int(self.used_bytes))
        self.total_bytes = max(0, int(self.total_bytes))
        # Usage reports above capacity are clamped, not trusted
        if self.used_bytes > self.total_bytes:
            self.used_bytes = self.total_bytes

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"

    @property
    def usage_percent(self) -> float:
        return usage_percent(self.used_bytes, self.total_bytes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.key,
            "name": self.name,
            "namespace": self.namespace,
            "size": self.capacity.format(),
            "usedBytes": self.used_bytes,
            "totalBytes": self.total_bytes,
            "usagePercent": round(self.usage_percent, 1),
            "status": self.phase.value,
            "storageClass": self.storage_class,
            "accessModes": list(self.access_modes),
            "hasAutoscaler": self.has_autoscaler,
            "createdAt": format_timestamp(self.created_at),
        }


def usage_percent(used_bytes: int, total_bytes: int) -> float:
    """Percentage of ``total_bytes`` in use; 0 for an empty volume."""
    if total_bytes <= 0:
        return 0.0
    used_bytes = min(max(used_bytes, 0), total_bytes)
    return used_bytes / total_bytes * 100


class _CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        use_enum_values=False,
    )


def _check_minimum(value: int, info: ValidationInfo) -> int:
    minimum = {
        "check_interval_seconds": Config.MIN_CHECK_INTERVAL,
        "cooldown_seconds": Config.MIN_COOLDOWN,
    }[info.field_name]
    if value < minimum:
        raise ValueError(f"Input should be greater than or equal to {minimum}")
    return value


class PolicyRequest(_CamelModel):
    """A request to create an autoscaler policy."""

    name: str = Field(min_length=1, max_length=253)
    namespace: str = Field(min_length=1, max_length=63)
    pvc_name: str = Field(min_length=1, max_length=253)
    min_size: str
    max_size: str
    step_size: str
    # Defaults and minimums are read when a request is validated, so
    # overrides from Config.load_file() apply
    trigger_above_percent: int = Field(
        default_factory=lambda: Config.DEFAULT_TRIGGER_PERCENT, ge=1, le=100
    )
    check_interval_seconds: int = Field(default_factory=lambda: Config.DEFAULT_CHECK_INTERVAL)
    cooldown_seconds: int = Field(default_factory=lambda: Config.DEFAULT_COOLDOWN)

    @field_validator("check_interval_seconds", "cooldown_seconds")
    @classmethod
    def _minimums(cls, value: int, info: ValidationInfo) -> int:
        return _check_minimum(value, info)


class AutoScalerPolicy(_CamelModel):
    """An autoscaler policy bound to exactly one PVC."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str
    namespace: str
    pvc_name: str
    min_size: str
    max_size: str
    step_size: str
    trigger_above_percent: int = Field(ge=1, le=100)
    check_interval_seconds: int
    cooldown_seconds: int
    status: PolicyStatus = PolicyStatus.ACTIVE
    last_scale_time: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    consecutive_failures: int = Field(default=0, ge=0)
    last_error: Optional[str] = None

    @field_validator("check_interval_seconds", "cooldown_seconds")
    @classmethod
    def _minimums(cls, value: int, info: ValidationInfo) -> int:
        return _check_minimum(value, info)

    @field_validator("last_scale_time", "created_at", mode="before")
    @classmethod
    def _timestamps(cls, value):
        return parse_timestamp(value)

    @classmethod
    def from_request(cls, request: PolicyRequest, **extra) -> "AutoScalerPolicy":
        return cls(**request.model_dump(), **extra)

    @property
    def target(self) -> tuple:
        return (self.namespace, self.pvc_name)

    @property
    def identity(self) -> tuple:
        """Composite identity shared by the record store and the cluster."""
        return (self.namespace, self.pvc_name, self.name)

    @property
    def min_quantity(self) -> CapacityQuantity:
        return CapacityQuantity.parse(self.min_size)

    @property
    def max_quantity(self) -> CapacityQuantity:
        return CapacityQuantity.parse(self.max_size)

    @property
    def step_quantity(self) -> CapacityQuantity:
        return CapacityQuantity.parse(self.step_size)

    def to_dict(self) -> Dict[str, Any]:
        """JSON-compatible camelCase representation."""
        return self.model_dump(mode="json", by_alias=True)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AutoScalerPolicy":
        return cls.model_validate(data)


# Spec fields of a PVCAutoScaler resource, as camelCase keys
RESOURCE_PARAMETERS = (
    "minSize",
    "maxSize",
    "stepSize",
    "triggerAbovePercent",
    "checkIntervalSeconds",
    "cooldownSeconds",
)


@dataclass
class PolicyResource:
    """A PVCAutoScaler custom resource as read from the cluster."""

    name: str
    namespace: str
    pvc_name: str
    parameters: Dict[str, Any] = field(default_factory=dict)
    phase: Optional[str] = None
    last_scale_time: Optional[datetime] = None
    message: Optional[str] = None
    created_at: Optional[datetime] = None

    @property
    def identity(self) -> tuple:
        return (self.namespace, self.pvc_name, self.name)

    @property
    def policy_id(self) -> str:
        # Namespaces are DNS labels and never contain a dot
        return f"k8s-{self.namespace}.{self.name}"

    @classmethod
    def from_body(cls, body: Dict[str, Any]) -> "PolicyResource":
        metadata = body.get("metadata") or {}
        spec = body.get("spec") or {}
        status = body.get("status") or {}
        return cls(
            name=metadata.get("name", ""),
            namespace=metadata.get("namespace", ""),
            pvc_name=spec.get("pvcName", ""),
            parameters={k: spec[k] for k in RESOURCE_PARAMETERS if spec.get(k) is not None},
            phase=status.get("phase"),
            last_scale_time=parse_timestamp(status.get("lastScaleTime")),
            message=status.get("message"),
            created_at=parse_timestamp(metadata.get("creationTimestamp")),
        )

    @staticmethod
    def body_for(policy: AutoScalerPolicy) -> Dict[str, Any]:
        """Build the custom resource manifest for a policy."""
        data = policy.to_dict()
        return {
            "apiVersion": f"{Config.CRD_GROUP}/{Config.CRD_VERSION}",
            "kind": Config.CRD_KIND,
            "metadata": {
                "name": policy.name,
                "namespace": policy.namespace,
            },
            "spec": {
                "pvcName": policy.pvc_name,
                **{k: data[k] for k in RESOURCE_PARAMETERS},
            },
        }

    @staticmethod
    def status_for(policy: AutoScalerPolicy) -> Dict[str, Any]:
        return {
            "phase": policy.status.value,
            "lastScaleTime": format_timestamp(policy.last_scale_time),
            "message": policy.last_error,
        }
