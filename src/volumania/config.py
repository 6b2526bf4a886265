"""Configuration management for the Volumania operator."""

import os
import logging
from typing import Any, Dict, Optional

import yaml
from pythonjsonlogger import jsonlogger


def setup_logging():
    """Configure structured logging for the operator."""
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()

    logger = logging.getLogger()
    logger.setLevel(log_level)

    handler = logging.StreamHandler()
    formatter = jsonlogger.JsonFormatter(
        "%(asctime)s %(name)s %(levelname)s %(message)s"
    )
    handler.setFormatter(formatter)
    logger.addHandler(handler)

    return logger


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Config:
    """Operator configuration."""

    # Kubernetes configuration
    NAMESPACE = os.getenv("WATCH_NAMESPACE", "")  # Empty means all namespaces
    CRD_GROUP = "scaling.volumania.io"
    CRD_VERSION = "v1"
    CRD_PLURAL = "pvcautoscalers"
    CRD_KIND = "PVCAutoScaler"
    AUTOSCALER_ANNOTATION = "volumania.io/autoscaler.enabled"

    # Policy limits
    MIN_CHECK_INTERVAL = 10  # seconds
    MIN_COOLDOWN = 60  # seconds
    DEFAULT_TRIGGER_PERCENT = 80
    DEFAULT_CHECK_INTERVAL = 60  # seconds
    DEFAULT_COOLDOWN = 300  # seconds

    # Consecutive failed attempts before a policy is put into Error
    FAILURE_THRESHOLD = 3

    # Cluster call timeout
    CLUSTER_CALL_TIMEOUT = float(os.getenv("CLUSTER_CALL_TIMEOUT", "10"))

    # Record store: "memory" or "redis"
    STORE_BACKEND = os.getenv("VOLUMANIA_STORE", "memory").lower()
    REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    REDIS_KEY_PREFIX = os.getenv("REDIS_KEY_PREFIX", "volumania")

    # Usage sampling: "prometheus" or "kubelet"
    USAGE_SOURCE = os.getenv("USAGE_SOURCE", "prometheus").lower()
    PROMETHEUS_URL = os.getenv("PROMETHEUS_URL", "http://prometheus:9090")
    METRIC_FETCH_TIMEOUT = 10  # seconds

    # HTTP API
    API_ENABLED = _env_bool("API_ENABLED", True)
    API_HOST = os.getenv("API_HOST", "0.0.0.0")
    API_PORT = int(os.getenv("API_PORT", "8080"))

    @classmethod
    def load_file(cls, path: Optional[str] = None) -> Dict[str, Any]:
        """
        Override configuration from a YAML file.

        Keys are matched case-insensitively against the class attributes,
        e.g. ``storeBackend`` or ``store_backend`` for ``STORE_BACKEND``.

        Args:
            path: File to load, defaults to $VOLUMANIA_CONFIG

        Returns:
            The overrides that were applied
        """
        path = path or os.getenv("VOLUMANIA_CONFIG")
        if not path:
            return {}

        with open(path, "r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh) or {}

        if not isinstance(data, dict):
            raise ValueError(f"Configuration file {path} must contain a mapping")

        applied = {}
        for key, value in data.items():
            attr = _attribute_name(key)
            if not hasattr(cls, attr):
                logging.getLogger(__name__).warning(
                    f"Ignoring unknown configuration key: {key}"
                )
                continue
            setattr(cls, attr, value)
            applied[attr] = value

        return applied


def _attribute_name(key: str) -> str:
    # storeBackend -> STORE_BACKEND
    out = []
    for i, ch in enumerate(key):
        if ch.isupper() and i > 0 and key[i - 1].islower():
            out.append("_")
        out.append(ch)
    return "".join(out).upper()
