"""Tests for image listing."""

import pytest

from kubeharness.conformance_runner.cluster.base import ResourceKind
from kubeharness.conformance_runner.errors import ConformanceError, WorkloadFailedError
from kubeharness.conformance_runner.list_images import ImageLister
from kubeharness.conformance_runner.models.workload import (
    ContainerState,
    WatchEvent,
    Workload,
)

POD = "list-images-x7k2q"
IMAGE = "registry.k8s.io/conformance:v1.30.2"


def _finished(phase: str) -> list[WatchEvent]:
    return [
        WatchEvent(
            kind="MODIFIED",
            object=Workload(namespace="default", name=POD, phase=phase),
        )
    ]


async def test_list_images_returns_sorted_images(cluster) -> None:
    """Images printed by the Pod are returned sorted and the Pod is deleted."""
    cluster.events[(ResourceKind.POD, POD)] = _finished("Succeeded")
    cluster.log_tail[POD] = [
        "registry.k8s.io/pause:3.9",
        "",
        "registry.k8s.io/e2e-test-images/agnhost:2.47",
    ]

    images = await ImageLister(cluster, IMAGE, timeout=5).list_images()

    assert images == [
        "registry.k8s.io/e2e-test-images/agnhost:2.47",
        "registry.k8s.io/pause:3.9",
    ]
    assert cluster.created == [(ResourceKind.POD, POD)]
    assert cluster.deleted == [(ResourceKind.POD, POD)]


async def test_list_images_failed_pod(cluster) -> None:
    """A Pod finishing unsuccessfully raises and is still deleted."""
    cluster.events[(ResourceKind.POD, POD)] = _finished("Failed")

    with pytest.raises(ConformanceError, match="finished in phase Failed"):
        await ImageLister(cluster, IMAGE, timeout=5).list_images()

    assert cluster.deleted == [(ResourceKind.POD, POD)]


async def test_list_images_image_pull_error(cluster) -> None:
    """A Pod that cannot pull its image fails fast."""
    cluster.close_watches = False
    cluster.events[(ResourceKind.POD, POD)] = [
        WatchEvent(
            kind="MODIFIED",
            object=Workload(
                namespace="default",
                name=POD,
                phase="Pending",
                containers={
                    "conformance-container": ContainerState(
                        state="waiting",
                        reason="ImagePullBackOff",
                        message="image not found",
                    )
                },
            ),
        )
    ]

    with pytest.raises(WorkloadFailedError, match="image not found"):
        await ImageLister(cluster, IMAGE, timeout=5).list_images()

    assert cluster.objects == {}
