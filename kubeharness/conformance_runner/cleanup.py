"""Remove everything a conformance run created."""

import logging

from kubeharness.conformance_runner.cluster.base import ClusterAPI, ResourceKind
from kubeharness.conformance_runner.constants import (
    CLUSTER_ROLE_BINDING_NAME,
    CLUSTER_ROLE_NAME,
    namespaced_name,
)
from kubeharness.conformance_runner.errors import NotFoundError, WatchError
from kubeharness.conformance_runner.models.workload import WatchEvent
from kubeharness.conformance_runner.waiter import ReadinessWaiter, object_deleted

logger = logging.getLogger(__name__)


class CleanupSequencer:
    """Delete the cluster-scoped RBAC objects and the run namespace.

    Deleting the namespace removes the Pod, ServiceAccount and ConfigMap
    with it. Objects that are already gone count as deleted, so cleanup can
    be repeated safely.
    """

    def __init__(
        self,
        cluster: ClusterAPI,
        namespace: str,
        timeout: float | None = None,
        waiter: ReadinessWaiter | None = None,
    ) -> None:
        """Initialize sequencer for the run in ``namespace``."""
        self.cluster = cluster
        self.namespace = namespace
        self.timeout = timeout
        self.waiter = waiter or ReadinessWaiter(cluster)

    async def cleanup(self) -> None:
        """Delete the run's objects and wait for the namespace to disappear.

        Raises:
            ClusterError: If a deletion failed
            WatchError: If the namespace watch failed or closed before deletion
            WaitTimeoutError: If the namespace was not deleted in time

        """
        await self._delete(
            ResourceKind.CLUSTER_ROLE_BINDING,
            namespaced_name(CLUSTER_ROLE_BINDING_NAME, self.namespace),
        )
        await self._delete(
            ResourceKind.CLUSTER_ROLE,
            namespaced_name(CLUSTER_ROLE_NAME, self.namespace),
        )

        requested = False
        deleted = False

        async def delete_namespace() -> bool:
            nonlocal requested
            requested = await self._delete_namespace()
            return requested

        def namespace_deleted(event: WatchEvent) -> bool:
            nonlocal deleted
            deleted = object_deleted(event)
            return deleted

        # The watch is opened before deleting so the DELETED event is not missed.
        await self.waiter.wait(
            ResourceKind.NAMESPACE,
            None,
            self.namespace,
            namespace_deleted,
            self.timeout,
            before=delete_namespace,
            failure_check=None,
        )
        if requested and not deleted:
            raise WatchError(
                f"watch on Namespace {self.namespace} closed before it was deleted"
            )

    async def _delete(self, kind: ResourceKind, name: str) -> bool:
        try:
            await self.cluster.delete(kind, name)
        except NotFoundError:
            logger.debug(f"{kind.value} {name} not found, nothing to delete.")
            return False
        logger.info(f"Deleted {kind.value} {name}.")
        return True

    async def _delete_namespace(self) -> bool:
        try:
            await self.cluster.delete(ResourceKind.NAMESPACE, self.namespace)
        except NotFoundError:
            logger.debug(f"Namespace {self.namespace} not found, nothing to delete.")
            return False
        logger.info(f"Waiting for Namespace {self.namespace} to be deleted.")
        return True
