"""Volume usage samplers."""

from .base import UsageSampler
from .prometheus import PrometheusUsageSampler
from .kubelet import KubeletUsageSampler

__all__ = [
    "UsageSampler",
    "PrometheusUsageSampler",
    "KubeletUsageSampler",
]
