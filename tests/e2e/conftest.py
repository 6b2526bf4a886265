"""Pytest configuration for E2E tests."""

import os
import subprocess
import time
from pathlib import Path

import pytest
import yaml
from kubernetes import client, config

DEPLOY_DIR = Path(__file__).resolve().parents[2] / "deploy"


def pytest_collection_modifyitems(config, items):
    """Skip E2E tests unless VOLUMANIA_E2E=1."""
    if os.getenv("VOLUMANIA_E2E") == "1":
        return
    skip = pytest.mark.skip(reason="set VOLUMANIA_E2E=1 to run E2E tests")
    for item in items:
        if "e2e" in item.keywords:
            item.add_marker(skip)


@pytest.fixture(scope="session")
def k8s_cluster():
    """
    Create a kind cluster for testing.

    This fixture creates a kind cluster before tests and tears it down after.
    """
    cluster_name = "volumania-test"

    # Create kind cluster
    print(f"\nCreating kind cluster: {cluster_name}")
    subprocess.run(
        ["kind", "create", "cluster", "--name", cluster_name, "--wait", "60s"],
        check=True,
    )

    # Load k8s config
    config.load_kube_config()

    yield cluster_name

    # Cleanup: Delete kind cluster
    print(f"\nDeleting kind cluster: {cluster_name}")
    subprocess.run(
        ["kind", "delete", "cluster", "--name", cluster_name],
        check=False,  # Don't fail if cluster is already gone
    )


@pytest.fixture(scope="session")
def k8s_client(k8s_cluster):
    """Get Kubernetes client."""
    return client.CoreV1Api()


@pytest.fixture(scope="session")
def custom_client(k8s_cluster):
    """Get Kubernetes custom objects client."""
    return client.CustomObjectsApi()


@pytest.fixture(scope="session")
def crd(k8s_cluster):
    """Install the PVCAutoScaler CRD."""
    with open(DEPLOY_DIR / "crd.yaml", "r", encoding="utf-8") as fh:
        manifest = yaml.safe_load(fh)

    api = client.ApiextensionsV1Api()
    try:
        api.create_custom_resource_definition(manifest)
    except client.ApiException as e:
        if e.status != 409:  # Ignore if already exists
            raise

    # Give the API server a moment to serve the new resource
    time.sleep(5)
    return manifest


@pytest.fixture
def namespace(k8s_client):
    """Create a test namespace."""
    namespace_name = "test-volumania"

    namespace_manifest = client.V1Namespace(
        metadata=client.V1ObjectMeta(name=namespace_name)
    )

    try:
        k8s_client.create_namespace(namespace_manifest)
    except client.ApiException as e:
        if e.status != 409:  # Ignore if already exists
            raise

    yield namespace_name

    # Cleanup: Delete namespace
    try:
        k8s_client.delete_namespace(namespace_name)
    except client.ApiException:
        pass


def wait_for_pvc_bound(k8s_client, namespace, name, timeout=120):
    """Wait for a PVC to be bound."""
    start_time = time.time()

    while time.time() - start_time < timeout:
        try:
            pvc = k8s_client.read_namespaced_persistent_volume_claim(name, namespace)
            if pvc.status.phase == "Bound":
                return True
        except client.ApiException:
            pass

        time.sleep(2)

    return False


@pytest.fixture
def pvc_bound(k8s_client):
    """Waiter for a PVC in the test namespace to be bound."""

    def wait(namespace, name, timeout=120):
        return wait_for_pvc_bound(k8s_client, namespace, name, timeout)

    return wait
