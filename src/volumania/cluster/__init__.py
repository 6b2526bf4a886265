"""Orchestration platform adapters."""

from .base import OrchestrationAdapter
from .kubernetes import KubernetesAdapter

__all__ = [
    "OrchestrationAdapter",
    "KubernetesAdapter",
]
