"""List the container images a conformance run would pull."""

import logging

from kubeharness.conformance_runner.cluster.base import ClusterAPI, ResourceKind
from kubeharness.conformance_runner.constants import CONFORMANCE_CONTAINER
from kubeharness.conformance_runner.errors import ConformanceError
from kubeharness.conformance_runner.manifests import build_list_images_pod
from kubeharness.conformance_runner.models.workload import WatchEvent, Workload
from kubeharness.conformance_runner.waiter import ReadinessWaiter

logger = logging.getLogger(__name__)

LIST_IMAGES_NAMESPACE = "default"


def workload_finished(event: WatchEvent) -> bool:
    """Whether the workload reached Succeeded or Failed."""
    return isinstance(event.object, Workload) and event.object.terminal


class ImageLister:
    """Run the suite binary in list mode in a throwaway Pod."""

    def __init__(
        self,
        cluster: ClusterAPI,
        image: str,
        namespace: str = LIST_IMAGES_NAMESPACE,
        timeout: float | None = None,
        waiter: ReadinessWaiter | None = None,
    ) -> None:
        """Initialize lister for the given conformance image."""
        self.cluster = cluster
        self.image = image
        self.namespace = namespace
        self.timeout = timeout
        self.waiter = waiter or ReadinessWaiter(cluster)

    async def list_images(self) -> list[str]:
        """Return the sorted image references printed by the suite.

        The Pod is deleted afterwards, also when listing failed.

        Raises:
            WorkloadFailedError: If the Pod could not run
            WaitTimeoutError: If the Pod did not finish in time
            ConformanceError: If the Pod finished unsuccessfully

        """
        pod = build_list_images_pod(self.image, self.namespace)
        name = await self.cluster.create(ResourceKind.POD, pod, self.namespace)
        logger.info(f"Created Pod {name}.")

        try:
            workload = await self.waiter.wait(
                ResourceKind.POD, self.namespace, name, workload_finished, self.timeout
            )
            if isinstance(workload, Workload) and workload.phase != "Succeeded":
                raise ConformanceError(f"Pod {name} finished in phase {workload.phase}")

            lines = await self.cluster.read_logs(
                self.namespace, name, CONFORMANCE_CONTAINER
            )
        finally:
            try:
                await self.cluster.delete(ResourceKind.POD, name, self.namespace)
                logger.info(f"Deleted Pod {name}.")
            except ConformanceError as e:
                logger.error(f"Failed to delete Pod {name}: {e}")

        return sorted(line.strip() for line in lines if line.strip())
