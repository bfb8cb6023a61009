"""Run orchestrator tying the conformance run lifecycle together."""

import logging
from collections.abc import Callable
from contextlib import aclosing

import typer

from kubeharness.conformance_runner.artifacts import fetch_files
from kubeharness.conformance_runner.cleanup import CleanupSequencer
from kubeharness.conformance_runner.cluster.base import ClusterAPI
from kubeharness.conformance_runner.constants import DEFAULT_FOCUS
from kubeharness.conformance_runner.deploy import DeploymentSequencer
from kubeharness.conformance_runner.errors import ConformanceError, TransportError
from kubeharness.conformance_runner.exitcode import ExitCodeExtractor
from kubeharness.conformance_runner.list_images import ImageLister
from kubeharness.conformance_runner.logs import LogStreamCoordinator
from kubeharness.conformance_runner.models.config import RunConfiguration
from kubeharness.conformance_runner.models.stream import StreamMessage

logger = logging.getLogger(__name__)


class ConformanceOrchestrator:
    """Deploys the suite, streams its output and cleans up afterwards."""

    __test__ = False

    def __init__(
        self,
        cluster: ClusterAPI,
        config: RunConfiguration,
        echo: Callable[[str], None] = typer.echo,
    ) -> None:
        """Initialize orchestrator with a cluster and run configuration."""
        self.cluster = cluster
        self.config = config
        self.echo = echo

    async def resolve_config(self) -> RunConfiguration:
        """Fill in defaults that depend on the cluster."""
        config = self.config
        if not config.conformance_image:
            version = await self.cluster.server_version()
            logger.info(f"API server version: {version}")
            config = config.with_server_version(version)
        if config.focus is None:
            config = config.model_copy(update={"focus": DEFAULT_FOCUS})
        self.config = config
        return config

    async def run(self) -> int:
        """Run the conformance suite and return the test container's exit code.

        Cleanup always runs. When the run itself failed, a cleanup failure is
        logged and the original error propagates.

        Returns:
            Exit code of the test container, or -1 if it could not be observed

        """
        config = await self.resolve_config()
        logger.info(f"API endpoint: {self.cluster.host}")
        logger.info(f"Using conformance image: {config.conformance_image}")
        logger.info(f"Using busybox image: {config.busybox_image}")
        logger.info(f"Test namespace: {config.namespace}")
        logger.info(f"Test focus: {config.focus}")
        if config.skip:
            logger.info(f"Test skip: {config.skip}")

        try:
            exit_code = await self._run_suite()
        except BaseException:
            try:
                await self.cleanup()
            except Exception:
                logger.exception("Cleanup after failed run failed")
            raise

        await self.cleanup()
        return exit_code

    async def _run_suite(self) -> int:
        logger.info("Deploying conformance resources...")
        report = await DeploymentSequencer(self.cluster, self.config).deploy()
        logger.info(
            f"Deployment completed: {len(report.created)} created, "
            f"{len(report.reused)} reused"
        )

        await self.stream_output()

        try:
            await fetch_files(self.cluster, self.config.namespace, self.config.output_dir)
        except (ConformanceError, OSError) as e:
            logger.error(f"Failed to download test results: {e}")

        exit_code = await ExitCodeExtractor(
            self.cluster, self.config.namespace
        ).fetch_exit_code()
        logger.info(f"Test container exited with code {exit_code}")
        return exit_code

    async def stream_output(self) -> None:
        """Forward the suite's log lines until it has finished.

        Raises:
            TransportError: If the log stream could not be kept alive

        """
        coordinator = LogStreamCoordinator.from_config(self.cluster, self.config)
        async with aclosing(coordinator.messages()) as messages:
            async for message in messages:
                if message.kind == "done":
                    logger.info("Test suite finished")
                    break
                self._handle(message)

    def _handle(self, message: StreamMessage) -> None:
        if message.kind == "line":
            self.echo(message.text or "")
        elif message.kind == "progress" and message.snapshot is not None:
            snapshot = message.snapshot
            logger.info(
                f"Running test {snapshot.completed_tests} of "
                f"{snapshot.total_tests} ({snapshot.percent:.0f}%)"
            )
        elif message.kind == "error":
            if message.fatal:
                raise TransportError(message.error or "log stream failed")
            logger.warning(f"Progress unavailable: {message.error}")

    async def cleanup(self) -> None:
        """Delete every object of the run in the configured namespace."""
        logger.info(f"Cleaning up namespace {self.config.namespace}...")
        await CleanupSequencer(
            self.cluster, self.config.namespace, self.config.cleanup_timeout
        ).cleanup()
        logger.info("Cleanup completed")

    async def list_images(self) -> list[str]:
        """Print and return the images the configured suite would use."""
        config = await self.resolve_config()
        images = await ImageLister(
            self.cluster, config.conformance_image or "", timeout=config.startup_timeout
        ).list_images()
        for image in images:
            self.echo(image)
        return images
