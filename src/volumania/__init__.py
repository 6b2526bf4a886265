"""Volumania: autoscaling for Kubernetes PersistentVolumeClaims."""

from .errors import (
    AlreadyExists,
    ClusterUnreachable,
    Conflict,
    DuplicateTarget,
    InvalidRequest,
    MalformedQuantity,
    MetricsUnavailable,
    NotFound,
    VolumaniaError,
    VolumeNotFound,
)
from .models import AutoScalerPolicy, PolicyRequest, PolicyResource, PolicyStatus, Volume
from .quantity import CapacityQuantity

__version__ = "0.1.0"

__all__ = [
    "AlreadyExists",
    "AutoScalerPolicy",
    "CapacityQuantity",
    "ClusterUnreachable",
    "Conflict",
    "DuplicateTarget",
    "InvalidRequest",
    "MalformedQuantity",
    "MetricsUnavailable",
    "NotFound",
    "PolicyRequest",
    "PolicyResource",
    "PolicyStatus",
    "Volume",
    "VolumaniaError",
    "VolumeNotFound",
]
