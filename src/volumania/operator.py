"""Volumania Kubernetes operator using kopf."""

import kopf
import logging
from typing import Any, Dict, Optional

from kubernetes import config as k8s_config

from .api import start_api
from .cluster import KubernetesAdapter
from .config import setup_logging, Config
from .engine import ReconciliationEngine
from .metrics import KubeletUsageSampler, PrometheusUsageSampler, UsageSampler
from .models import PolicyResource
from .store import MemoryRecordStore, RecordStore, RedisRecordStore

# Set up logging
setup_logging()
logger = logging.getLogger(__name__)


def create_store() -> RecordStore:
    """Create the record store selected by configuration."""
    backend = Config.STORE_BACKEND
    if backend == "redis":
        return RedisRecordStore(Config.REDIS_URL, Config.REDIS_KEY_PREFIX)
    if backend != "memory":
        logger.error(f"Unknown store backend: {backend}, using memory")
    return MemoryRecordStore()


def create_usage_sampler(sampler_config: Optional[Dict[str, Any]] = None) -> UsageSampler:
    """Create the usage sampler selected by configuration."""
    source = Config.USAGE_SOURCE
    if source == "kubelet":
        return KubeletUsageSampler(sampler_config)
    if source != "prometheus":
        logger.error(f"Unknown usage source: {source}, using prometheus")
    return PrometheusUsageSampler(sampler_config)


def load_kube_config():
    """Load in-cluster config, falling back to kubeconfig."""
    try:
        k8s_config.load_incluster_config()
        logger.info("Loaded in-cluster Kubernetes configuration")
    except k8s_config.ConfigException:
        try:
            k8s_config.load_kube_config()
            logger.info("Loaded kubeconfig")
        except k8s_config.ConfigException:
            logger.error("Failed to load Kubernetes configuration")
            raise


@kopf.on.startup()
async def on_startup(memo: kopf.Memo, settings: kopf.OperatorSettings, **kwargs):
    """Build the engine and its collaborators, then start reconciling."""
    Config.load_file()
    settings.posting.level = logging.WARNING

    load_kube_config()

    store = create_store()
    adapter = KubernetesAdapter()
    sampler = create_usage_sampler()
    engine = ReconciliationEngine(store=store, adapter=adapter, sampler=sampler)

    memo.store = store
    memo.adapter = adapter
    memo.sampler = sampler
    memo.engine = engine
    memo.api_runner = None

    await engine.start()

    if Config.API_ENABLED:
        memo.api_runner = await start_api(engine)

    logger.info("Volumania operator ready")


@kopf.on.cleanup()
async def on_cleanup(memo: kopf.Memo, **kwargs):
    """Stop loops and release every collaborator."""
    engine = getattr(memo, "engine", None)
    if engine is None:
        return

    await engine.stop()

    if memo.api_runner is not None:
        await memo.api_runner.cleanup()

    await memo.sampler.close()
    await memo.adapter.close()
    memo.store.close()
    logger.info("Volumania operator stopped")


@kopf.on.create(Config.CRD_GROUP, Config.CRD_VERSION, Config.CRD_PLURAL)
async def on_create(body, name, namespace, memo: kopf.Memo, **kwargs):
    """Adopt PVCAutoScaler resources created on the cluster."""
    logger.info(f"{Config.CRD_KIND} {namespace}/{name} created")

    resource = PolicyResource.from_body(body)
    policy = await memo.engine.adopt_resource(resource)
    if policy is None:
        raise kopf.PermanentError(f"{Config.CRD_KIND} {namespace}/{name} cannot be adopted")

    return {"policyId": policy.id}


@kopf.on.delete(Config.CRD_GROUP, Config.CRD_VERSION, Config.CRD_PLURAL, optional=True)
async def on_delete(name, namespace, memo: kopf.Memo, **kwargs):
    """Stop managing a policy whose resource was deleted."""
    logger.info(f"{Config.CRD_KIND} {namespace}/{name} deleted")
    await memo.engine.forget_resource(namespace, name)


def main():
    """Main entry point for the operator."""
    logger.info("Starting Volumania operator")

    namespaces = [Config.NAMESPACE] if Config.NAMESPACE else []
    kopf.run(
        standalone=True,
        clusterwide=not namespaces,
        namespaces=namespaces,
    )


if __name__ == "__main__":
    main()
