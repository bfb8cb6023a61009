"""Block until a watched object reaches a wanted state."""

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable

from kubeharness.conformance_runner.cluster.base import ClusterAPI, ResourceKind
from kubeharness.conformance_runner.errors import (
    WaitTimeoutError,
    WatchError,
    WorkloadFailedError,
)
from kubeharness.conformance_runner.models.workload import (
    NamespaceState,
    WatchEvent,
    Workload,
)

logger = logging.getLogger(__name__)

EventPredicate = Callable[[WatchEvent], bool]
FailureCheck = Callable[[object], str | None]

# A container in one of these states will not recover on its own.
CONTAINER_ERROR_REASONS = frozenset(
    {"ErrImagePull", "ImagePullBackOff", "Error", "CrashLoopBackOff"}
)


def check_failed_workload(obj: object) -> str | None:
    """Return the failure message of a workload stuck in an error state."""
    if not isinstance(obj, Workload):
        return None

    for name, state in obj.containers.items():
        if state.reason not in CONTAINER_ERROR_REASONS:
            continue
        if state.state == "waiting":
            return state.message or f"container {name} is in {state.reason}"
        if state.state == "terminated":
            return state.message or "Pod has encountered an error"
    return None


def workload_started(event: WatchEvent) -> bool:
    """Whether the workload has left the Pending phase."""
    return isinstance(event.object, Workload) and event.object.phase != "Pending"


def object_deleted(event: WatchEvent) -> bool:
    """Whether the event reports the object's deletion."""
    return event.kind == "DELETED"


def _phase_of(obj: object) -> str:
    if isinstance(obj, Workload | NamespaceState):
        return obj.phase
    return "Unknown"


class ReadinessWaiter:
    """Watch an object until a predicate holds, it fails, or time runs out."""

    def __init__(self, cluster: ClusterAPI) -> None:
        """Initialize waiter with the cluster to watch."""
        self.cluster = cluster

    async def wait(  # noqa: PLR0913
        self,
        kind: ResourceKind,
        namespace: str | None,
        name: str,
        predicate: EventPredicate,
        timeout: float | None,
        *,
        before: Callable[[], Awaitable[bool]] | None = None,
        failure_check: FailureCheck | None = check_failed_workload,
    ) -> object | None:
        """Wait for ``predicate`` to hold for an event about the object.

        Args:
            kind: Kind of the watched object
            namespace: Namespace of the object, None for cluster-scoped kinds
            name: Name of the object
            predicate: Success condition, evaluated for every event
            timeout: Seconds to wait, None to wait until cancelled
            before: Called once the watch is established; returning False
                ends the wait immediately with None
            failure_check: Returns a message when the object has failed

        Returns:
            The object that satisfied the predicate, or the last object seen
            if the watch closed first

        Raises:
            WorkloadFailedError: If the object entered a failure state
            WaitTimeoutError: If the timeout elapsed
            WatchError: If the cluster reported a watch error

        """
        last_seen: list[object | None] = [None]

        async with self.cluster.watch(kind, namespace, name) as events:
            if before is not None and not await before():
                return None

            consume = self._consume(
                kind, name, events, predicate, failure_check, last_seen
            )
            if timeout is None:
                return await consume

            try:
                return await asyncio.wait_for(consume, timeout)
            except asyncio.TimeoutError:
                phase = _phase_of(last_seen[0])
                raise WaitTimeoutError(
                    f"timed out waiting for {kind.value} {name}, "
                    f"last status was {phase}",
                    phase,
                ) from None

    async def _consume(  # noqa: PLR0913
        self,
        kind: ResourceKind,
        name: str,
        events: AsyncIterator[WatchEvent],
        predicate: EventPredicate,
        failure_check: FailureCheck | None,
        last_seen: list[object | None],
    ) -> object | None:
        async for event in events:
            if event.kind == "ERROR":
                raise WatchError(
                    f"error watching {kind.value} {name}: {event.message}"
                )

            if event.object is not None:
                last_seen[0] = event.object

            if failure_check is not None:
                message = failure_check(event.object)
                if message:
                    raise WorkloadFailedError(message)

            if predicate(event):
                return event.object

        logger.debug(f"Watch on {kind.value} {name} closed")
        return last_seen[0]
