"""Tests for the conformance orchestrator."""

from pathlib import Path

import pytest

from kubeharness.conformance_runner.cluster.base import ResourceKind
from kubeharness.conformance_runner.constants import (
    CONFORMANCE_CONTAINER,
    OUTPUT_CONTAINER,
    POD_NAME,
)
from kubeharness.conformance_runner.errors import (
    PreflightConflictError,
    TransportError,
)
from kubeharness.conformance_runner.manifests import build_namespace
from kubeharness.conformance_runner.models.config import RunConfiguration
from kubeharness.conformance_runner.models.stream import StreamMessage
from kubeharness.conformance_runner.models.workload import (
    ContainerState,
    WatchEvent,
    Workload,
)
from kubeharness.conformance_runner.orchestrator import ConformanceOrchestrator


def _pod(phase: str, exit_code: int | None = None) -> Workload:
    state = (
        ContainerState(state="terminated", exit_code=exit_code)
        if exit_code is not None
        else ContainerState(state="running")
    )
    return Workload(
        namespace="conformance",
        name=POD_NAME,
        phase=phase,
        containers={
            CONFORMANCE_CONTAINER: state,
            OUTPUT_CONTAINER: ContainerState(state="running"),
        },
    )


@pytest.fixture
def run_config(tmp_path: Path) -> RunConfiguration:
    """Create a configuration without image, resolved from the cluster."""
    return RunConfiguration(
        output_dir=str(tmp_path / "out"),
        disable_progress_status=True,
        startup_timeout=5,
        cleanup_timeout=5,
    )


def _script_run(cluster, exit_code: int) -> list[str]:
    """Let the suite print two lines, then terminate with ``exit_code``."""
    cluster.events[(ResourceKind.POD, POD_NAME)] = [
        WatchEvent(kind="MODIFIED", object=_pod("Running"))
    ]
    cluster.log_streams = [["Will run 1 of 10 specs", "•"]]
    cluster.files[(POD_NAME, OUTPUT_CONTAINER, "/tmp/results/e2e.log")] = "log"
    cluster.files[(POD_NAME, OUTPUT_CONTAINER, "/tmp/results/junit_01.xml")] = "xml"

    echoed: list[str] = []

    def echo(line: str) -> None:
        echoed.append(line)
        cluster.workloads[("conformance", POD_NAME)] = _pod("Running", exit_code)

    cluster.echo = echo
    return echoed


async def test_run_success(cluster, run_config: RunConfiguration) -> None:
    """run deploys, streams, downloads results, reports the code and cleans up."""
    echoed = _script_run(cluster, exit_code=0)
    orchestrator = ConformanceOrchestrator(cluster, run_config, echo=cluster.echo)

    code = await orchestrator.run()

    assert code == 0
    assert echoed == ["Will run 1 of 10 specs", "•"]
    assert orchestrator.config.conformance_image == "registry.k8s.io/conformance:v1.30.2"
    assert orchestrator.config.focus == "\\[Conformance\\]"
    out = Path(run_config.output_dir)
    assert (out / "e2e.log").read_text() == "log"
    assert (out / "junit_01.xml").read_text() == "xml"
    assert (ResourceKind.NAMESPACE, "conformance") in cluster.deleted
    assert cluster.objects == {}


async def test_run_reports_failing_exit_code(
    cluster, run_config: RunConfiguration
) -> None:
    """A failing suite's exit code is returned."""
    _script_run(cluster, exit_code=1)
    orchestrator = ConformanceOrchestrator(cluster, run_config, echo=cluster.echo)

    assert await orchestrator.run() == 1


async def test_run_continues_when_download_fails(
    cluster, run_config: RunConfiguration
) -> None:
    """Missing result files do not prevent reading the exit code."""
    _script_run(cluster, exit_code=0)
    cluster.files.clear()
    orchestrator = ConformanceOrchestrator(cluster, run_config, echo=cluster.echo)

    assert await orchestrator.run() == 0


async def test_run_cleans_up_after_preflight_conflict(
    cluster, run_config: RunConfiguration
) -> None:
    """A preflight conflict propagates and cleanup still runs."""
    await cluster.create(ResourceKind.NAMESPACE, build_namespace("conformance"))
    orchestrator = ConformanceOrchestrator(cluster, run_config, echo=lambda _: None)

    with pytest.raises(PreflightConflictError, match="please run cleanup first"):
        await orchestrator.run()

    assert cluster.deleted == [(ResourceKind.NAMESPACE, "conformance")]


async def test_run_keeps_original_error_when_cleanup_fails(
    cluster, run_config: RunConfiguration
) -> None:
    """A failing cleanup after a failed run does not hide the run's error."""
    await cluster.create(ResourceKind.NAMESPACE, build_namespace("conformance"))
    cluster.close_watches = False
    run_config = run_config.model_copy(update={"cleanup_timeout": 0.05})

    async def accept_delete(kind, name, namespace=None) -> None:
        return None

    cluster.delete = accept_delete
    orchestrator = ConformanceOrchestrator(cluster, run_config, echo=lambda _: None)

    with pytest.raises(PreflightConflictError):
        await orchestrator.run()


def test_handle_fatal_error_raises(cluster, run_config: RunConfiguration) -> None:
    """A fatal stream error aborts the run."""
    orchestrator = ConformanceOrchestrator(cluster, run_config, echo=lambda _: None)

    with pytest.raises(TransportError, match="gone"):
        orchestrator._handle(StreamMessage.failure("gone", fatal=True))


def test_handle_non_fatal_error_is_logged(
    cluster, run_config: RunConfiguration, caplog: pytest.LogCaptureFixture
) -> None:
    """A non-fatal stream error is only logged."""
    orchestrator = ConformanceOrchestrator(cluster, run_config, echo=lambda _: None)

    orchestrator._handle(StreamMessage.failure("could not find test spec count"))

    assert "could not find test spec count" in caplog.text


async def test_resolve_config_keeps_explicit_image(
    cluster, run_config: RunConfiguration
) -> None:
    """An explicit image is not replaced by the server version."""
    cluster.version = "not-a-version"
    config = run_config.model_copy(
        update={"conformance_image": "mirror/conformance:v1.29.0", "focus": "sig-node"}
    )

    resolved = await ConformanceOrchestrator(cluster, config).resolve_config()

    assert resolved.conformance_image == "mirror/conformance:v1.29.0"
    assert resolved.focus == "sig-node"


async def test_resolve_config_trims_vendor_suffix(
    cluster, run_config: RunConfiguration
) -> None:
    """Vendor suffixes are dropped from the derived image tag."""
    cluster.version = "v1.29.4+k3s1"

    resolved = await ConformanceOrchestrator(cluster, run_config).resolve_config()

    assert resolved.conformance_image == "registry.k8s.io/conformance:v1.29.4"


async def test_cleanup(cluster, run_config: RunConfiguration) -> None:
    """cleanup deletes the run namespace."""
    await cluster.create(ResourceKind.NAMESPACE, build_namespace("conformance"))

    await ConformanceOrchestrator(cluster, run_config).cleanup()

    assert cluster.deleted == [(ResourceKind.NAMESPACE, "conformance")]


async def test_list_images_echoes_images(
    cluster, run_config: RunConfiguration
) -> None:
    """list_images prints each image on its own line."""
    pod = "list-images-x7k2q"
    cluster.events[(ResourceKind.POD, pod)] = [
        WatchEvent(
            kind="MODIFIED",
            object=Workload(namespace="default", name=pod, phase="Succeeded"),
        )
    ]
    cluster.log_tail[pod] = ["b.io/image:1", "a.io/image:2"]
    echoed: list[str] = []

    images = await ConformanceOrchestrator(
        cluster, run_config, echo=echoed.append
    ).list_images()

    assert images == ["a.io/image:2", "b.io/image:1"]
    assert echoed == images
