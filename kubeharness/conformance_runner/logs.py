"""Stream the test log with progress reports, reconnecting dropped streams.

The coordinator merges two feeds into one queue read by a single consumer:

* the primary feed follows the test container's log line by line;
* the progress feed periodically reads the result log and reports how many
  tests have completed.

Log streams served by the API server can end while the suite is still
running. When the primary feed ends, the coordinator checks whether the
suite actually finished; if not, it follows the log again, skipping the
lines it already forwarded.
"""

import asyncio
import logging
from collections.abc import AsyncIterator

from kubeharness.conformance_runner.cluster.base import ClusterAPI
from kubeharness.conformance_runner.constants import (
    CONFORMANCE_CONTAINER,
    E2E_LOG_FILE,
    POD_NAME,
    RESULTS_DIR,
)
from kubeharness.conformance_runner.errors import (
    ConformanceError,
    ProgressParseError,
)
from kubeharness.conformance_runner.models.config import RunConfiguration
from kubeharness.conformance_runner.models.stream import StreamMessage
from kubeharness.conformance_runner.progress import (
    is_suite_finished,
    parse_test_progress,
)

logger = logging.getLogger(__name__)


class _FeedEnded:
    """Sentinel put on the queue when the primary feed stops."""

    def __init__(self, error: str | None = None) -> None:
        self.error = error


async def _cancel(tasks: list[asyncio.Task[None]]) -> None:
    for task in tasks:
        task.cancel()
    results = await asyncio.gather(*tasks, return_exceptions=True)
    for result in results:
        if isinstance(result, Exception):
            logger.error("Log feed failed", exc_info=result)


class LogStreamCoordinator:
    """Merge the live test log and progress reports into one message stream."""

    def __init__(  # noqa: PLR0913
        self,
        cluster: ClusterAPI,
        namespace: str,
        *,
        progress_interval: float = 30.0,
        disable_progress: bool = False,
        finish_check_attempts: int = 6,
        finish_check_delay: float = 2.0,
        finish_check_max_delay: float = 20.0,
        finish_check_tail_lines: int = 30,
        max_idle_reconnects: int = 5,
    ) -> None:
        """Initialize coordinator for the conformance Pod in ``namespace``."""
        self.cluster = cluster
        self.namespace = namespace
        self.progress_interval = progress_interval
        self.disable_progress = disable_progress
        self.finish_check_attempts = finish_check_attempts
        self.finish_check_delay = finish_check_delay
        self.finish_check_max_delay = finish_check_max_delay
        self.finish_check_tail_lines = finish_check_tail_lines
        self.max_idle_reconnects = max_idle_reconnects

    @classmethod
    def from_config(
        cls, cluster: ClusterAPI, config: RunConfiguration
    ) -> "LogStreamCoordinator":
        return cls(
            cluster,
            config.namespace,
            progress_interval=config.progress_status_interval,
            disable_progress=config.disable_progress_status,
        )

    async def messages(self) -> AsyncIterator[StreamMessage]:
        """Yield log lines and progress until the suite has finished.

        The last message is either ``done`` or a fatal ``error``. Closing the
        generator (or cancelling its consumer) stops every feed.
        """
        queue: asyncio.Queue[StreamMessage | _FeedEnded] = asyncio.Queue()
        feeds: list[asyncio.Task[None]] = []
        if not self.disable_progress:
            feeds.append(asyncio.create_task(self._report_progress(queue)))

        forwarded = 0
        idle_reconnects = 0
        try:
            while True:
                lines_before = forwarded
                primary = asyncio.create_task(self._follow_logs(queue, skip=forwarded))
                feeds.append(primary)

                while True:
                    item = await queue.get()
                    if isinstance(item, _FeedEnded):
                        ended = item
                        break
                    if item.kind == "line":
                        forwarded += 1
                    yield item

                feeds.remove(primary)
                await _cancel([primary])
                if ended.error:
                    logger.warning(f"Log stream interrupted: {ended.error}")

                if not await self._tests_still_running():
                    yield StreamMessage.done()
                    return

                idle_reconnects = idle_reconnects + 1 if forwarded == lines_before else 0
                if idle_reconnects > self.max_idle_reconnects:
                    cause = ended.error or "stream ended without new output"
                    yield StreamMessage.failure(
                        "log stream could not be re-established after "
                        f"{self.max_idle_reconnects} attempts: {cause}",
                        fatal=True,
                    )
                    return

                logger.info("Tests are still running, restarting log stream")
        finally:
            await _cancel(feeds)

    async def _follow_logs(
        self, queue: "asyncio.Queue[StreamMessage | _FeedEnded]", skip: int
    ) -> None:
        """Primary feed: forward each new log line, then report the end."""
        error: str | None = None
        try:
            async for line in self.cluster.logs(
                self.namespace, POD_NAME, CONFORMANCE_CONTAINER, follow=True
            ):
                if skip > 0:
                    skip -= 1
                    continue
                queue.put_nowait(StreamMessage.line(line))
        except Exception as e:  # noqa: BLE001
            error = f"{type(e).__name__}: {e}"
        finally:
            queue.put_nowait(_FeedEnded(error))

    async def _report_progress(
        self, queue: "asyncio.Queue[StreamMessage | _FeedEnded]"
    ) -> None:
        """Progress feed: read the result log every interval until finished."""
        path = f"{RESULTS_DIR}/{E2E_LOG_FILE}"
        while True:
            await asyncio.sleep(self.progress_interval)
            try:
                text = await self.cluster.read_file(
                    self.namespace, POD_NAME, CONFORMANCE_CONTAINER, path
                )
            except Exception as e:  # noqa: BLE001
                logger.warning(f"Failed to read test progress: {e}")
                continue

            try:
                snapshot = parse_test_progress(text)
            except ProgressParseError as e:
                queue.put_nowait(StreamMessage.failure(str(e)))
                continue

            queue.put_nowait(StreamMessage.progress(snapshot))
            if snapshot.finished:
                return

    async def _tests_still_running(self) -> bool:
        """Decide whether the suite is still running after the log stream ended.

        A terminated test container settles it. Otherwise the log tail is
        searched for the suite's completion marker, retrying with backoff.
        Inconclusive checks count as still running.
        """
        try:
            workload = await self.cluster.get_workload(self.namespace, POD_NAME)
        except ConformanceError as e:
            logger.warning(f"Failed to get Pod status: {e}")
            workload = None
        if workload is not None:
            state = workload.container(CONFORMANCE_CONTAINER)
            if state is not None and state.terminated:
                return False

        for attempt in range(self.finish_check_attempts):
            if attempt:
                await asyncio.sleep(self._backoff(attempt))
            try:
                lines = await self.cluster.read_logs(
                    self.namespace,
                    POD_NAME,
                    CONFORMANCE_CONTAINER,
                    tail_lines=self.finish_check_tail_lines,
                )
            except ConformanceError as e:
                logger.warning(f"Failed to read log tail: {e}")
                continue

            if any(is_suite_finished(line) for line in lines):
                return False

        return True

    def _backoff(self, attempt: int) -> float:
        return min(
            self.finish_check_delay * 2 ** (attempt - 1), self.finish_check_max_delay
        )
