"""Tests for the cleanup sequencer."""

import pytest

from kubeharness.conformance_runner.cleanup import CleanupSequencer
from kubeharness.conformance_runner.cluster.base import ResourceKind
from kubeharness.conformance_runner.constants import POD_NAME
from kubeharness.conformance_runner.deploy import DeploymentSequencer
from kubeharness.conformance_runner.errors import (
    ClusterError,
    WaitTimeoutError,
    WatchError,
)
from kubeharness.conformance_runner.manifests import build_namespace
from kubeharness.conformance_runner.models.workload import WatchEvent, Workload


async def _deploy(cluster, config) -> None:
    cluster.events[(ResourceKind.POD, POD_NAME)] = [
        WatchEvent(
            kind="MODIFIED",
            object=Workload(namespace="conformance", name=POD_NAME, phase="Running"),
        )
    ]
    await DeploymentSequencer(cluster, config).deploy()


async def test_cleanup_deletes_everything(cluster, config) -> None:
    """cleanup removes RBAC objects and the namespace with its contents."""
    await _deploy(cluster, config)

    await CleanupSequencer(cluster, "conformance", timeout=5).cleanup()

    assert cluster.deleted == [
        (ResourceKind.CLUSTER_ROLE_BINDING, "conformance-serviceaccount-role:conformance"),
        (ResourceKind.CLUSTER_ROLE, "conformance-serviceaccount:conformance"),
        (ResourceKind.NAMESPACE, "conformance"),
    ]
    assert cluster.objects == {}


async def test_cleanup_is_idempotent(cluster, config) -> None:
    """Running cleanup twice succeeds both times."""
    await _deploy(cluster, config)
    sequencer = CleanupSequencer(cluster, "conformance", timeout=5)

    await sequencer.cleanup()
    await sequencer.cleanup()

    assert len(cluster.deleted) == 3


async def test_cleanup_on_empty_cluster(cluster) -> None:
    """Cleanup with nothing to delete succeeds."""
    await CleanupSequencer(cluster, "conformance", timeout=5).cleanup()

    assert cluster.deleted == []


async def test_cleanup_times_out_waiting_for_namespace(cluster) -> None:
    """A namespace that is never reported deleted times out."""
    await cluster.create(ResourceKind.NAMESPACE, build_namespace("conformance"))
    cluster.close_watches = False

    # Deletion is accepted but the namespace stays Terminating.
    async def accept_delete(kind, name, namespace=None) -> None:
        cluster.deleted.append((kind, name))

    cluster.delete = accept_delete

    with pytest.raises(WaitTimeoutError, match="Namespace conformance"):
        await CleanupSequencer(cluster, "conformance", timeout=0.05).cleanup()


async def test_cleanup_propagates_api_errors(cluster) -> None:
    """Errors other than not found abort cleanup."""
    cluster.delete_errors[
        (ResourceKind.CLUSTER_ROLE_BINDING, None, "conformance-serviceaccount-role:conformance")
    ] = ClusterError("forbidden", 403)

    with pytest.raises(ClusterError, match="forbidden"):
        await CleanupSequencer(cluster, "conformance", timeout=5).cleanup()


async def test_cleanup_fails_when_watch_closes_before_deletion(cluster) -> None:
    """A namespace watch ending without a deletion event is an error."""
    await cluster.create(ResourceKind.NAMESPACE, build_namespace("conformance"))

    async def accept_delete(kind, name, namespace=None) -> None:
        cluster.deleted.append((kind, name))

    cluster.delete = accept_delete

    with pytest.raises(WatchError, match="closed before it was deleted"):
        await CleanupSequencer(cluster, "conformance", timeout=5).cleanup()

    assert cluster.deleted[-1] == (ResourceKind.NAMESPACE, "conformance")
