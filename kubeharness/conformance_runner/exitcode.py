"""Determine the test suite's exit code from the Pod status."""

import logging

from kubeharness.conformance_runner.cluster.base import ClusterAPI, ResourceKind
from kubeharness.conformance_runner.constants import CONFORMANCE_CONTAINER, POD_NAME
from kubeharness.conformance_runner.errors import ConformanceError, WatchError
from kubeharness.conformance_runner.models.workload import Workload

logger = logging.getLogger(__name__)

# Returned when the watch ends before the test container terminated.
INDETERMINATE_EXIT_CODE = -1


class ExitCodeExtractor:
    """Wait for the test container to terminate and report its exit code.

    The output container keeps running to serve the results volume, so the
    Pod may stay Running after the tests are done. A terminated test
    container is therefore as conclusive as a terminal Pod phase.
    """

    def __init__(self, cluster: ClusterAPI, namespace: str) -> None:
        """Initialize extractor for the conformance Pod in ``namespace``."""
        self.cluster = cluster
        self.namespace = namespace

    async def fetch_exit_code(self) -> int:
        """Return the test container's exit code.

        Returns:
            The exit code, or INDETERMINATE_EXIT_CODE if it could not be
            observed before the watch ended

        Raises:
            ConformanceError: If the Pod terminated without a terminated
                test container
            WatchError: If the cluster reported a watch error

        """
        logger.info("Waiting for Pod to terminate...")
        async with self.cluster.watch(
            ResourceKind.POD, self.namespace, POD_NAME
        ) as events:
            async for event in events:
                if event.kind == "ERROR":
                    raise WatchError(f"error watching Pod {POD_NAME}: {event.message}")

                workload = event.object
                if not isinstance(workload, Workload):
                    logger.warning(
                        f"Received unexpected {type(workload).__name__} from watch."
                    )
                    return INDETERMINATE_EXIT_CODE

                code = self._exit_code(workload)
                if code is not None:
                    return code

        return INDETERMINATE_EXIT_CODE

    def _exit_code(self, workload: Workload) -> int | None:
        state = workload.container(CONFORMANCE_CONTAINER)
        exit_code = state.exit_code if state is not None and state.terminated else None

        if workload.terminal:
            logger.info(f"Pod terminated ({workload.phase}).")
            if exit_code is None:
                raise ConformanceError(
                    f"{CONFORMANCE_CONTAINER} is not terminated in {workload.phase} Pod"
                )
            return exit_code

        if exit_code is not None:
            logger.info(f"Container {CONFORMANCE_CONTAINER} terminated.")
        return exit_code
