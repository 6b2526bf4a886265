"""Error taxonomy for Volumania."""

from typing import Any, Optional


class VolumaniaError(Exception):
    """Base class for all Volumania errors."""


class MalformedQuantity(VolumaniaError, ValueError):
    """A capacity string does not match ``<number><unit>``."""

    def __init__(self, text: Any, detail: Optional[str] = None):
        self.text = text
        message = f"Malformed capacity quantity: {text!r}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class InvalidRequest(VolumaniaError):
    """A policy creation request failed validation."""

    def __init__(self, message: str, errors: Optional[list] = None):
        super().__init__(message)
        self.errors = errors or []


class DuplicateTarget(VolumaniaError):
    """The target volume already has an autoscaler policy."""

    def __init__(self, namespace: str, name: str):
        super().__init__(f"PVC {namespace}/{name} already has an autoscaler")
        self.namespace = namespace
        self.name = name


class VolumeNotFound(VolumaniaError):
    """The target volume of a creation request does not exist."""

    def __init__(self, namespace: str, name: str):
        super().__init__(f"PVC {namespace}/{name} not found")
        self.namespace = namespace
        self.name = name


class NotFound(VolumaniaError, KeyError):
    """A record lookup found nothing."""

    def __str__(self):
        return str(self.args[0]) if self.args else "not found"


class ClusterUnreachable(VolumaniaError):
    """The orchestration platform could not be reached (or timed out)."""


class Conflict(VolumaniaError):
    """The orchestration platform rejected a write because of a conflict."""


class AlreadyExists(Conflict):
    """The custom resource being created already exists."""


class MetricsUnavailable(VolumaniaError):
    """Volume usage could not be sampled."""


# Reason recorded on a policy whose target PVC disappeared
TARGET_VOLUME_MISSING = "TargetVolumeMissing"
