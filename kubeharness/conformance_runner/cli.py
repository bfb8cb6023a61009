"""CLI entry point for the conformance runner."""

import asyncio
import logging
import platform
import sys
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path

import typer
from kubernetes.config import ConfigException

from kubeharness.conformance_runner.cluster.kube import KubernetesCluster
from kubeharness.conformance_runner.exitcode import INDETERMINATE_EXIT_CODE
from kubeharness.conformance_runner.models.config import (
    RunConfiguration,
    default_config_file,
    load_configuration,
    merge_overrides,
)
from kubeharness.conformance_runner.orchestrator import ConformanceOrchestrator

# Configure logging - force reconfiguration
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    stream=sys.stderr,
    force=True,  # Force reconfiguration even if already set up
)
logger = logging.getLogger(__name__)

app = typer.Typer()

DISTRIBUTION = "kubeharness-conformance-runner"


def build_version_string() -> str:
    """Describe the installed runner and the interpreter running it."""
    try:
        runner_version = version(DISTRIBUTION)
    except PackageNotFoundError:
        runner_version = "unknown"
    return (
        f"  module:   {DISTRIBUTION}\n"
        f"  version:  {runner_version}\n"
        f"  python:   {platform.python_version()}\n"
    )


def _show_version(value: bool) -> None:
    if value:
        typer.echo(build_version_string(), nl=False)
        raise typer.Exit()


def build_configuration(
    config_file: Path | None, overrides: dict[str, object]
) -> RunConfiguration:
    """Load the config file and apply command line values on top.

    Without an explicit file the per-user default file is read if present.

    Raises:
        FileNotFoundError: If the config file doesn't exist
        ValueError: If the resulting configuration is invalid

    """
    if config_file is None and default_config_file().exists():
        config_file = default_config_file()
    config = load_configuration(config_file) if config_file else RunConfiguration()
    return merge_overrides(config, overrides)


@app.command()
def main(  # noqa: PLR0913, C901
    config_file: Path | None = typer.Option(  # noqa: B008
        None, "--config", help="YAML file with run settings"
    ),
    kubeconfig: str | None = typer.Option(None, help="Path to the kubeconfig file"),
    namespace: str | None = typer.Option(None, help="Namespace to run tests in"),
    focus: str | None = typer.Option(None, help="Regex of tests to run"),
    skip: str | None = typer.Option(None, help="Regex of tests to skip"),
    parallel: int | None = typer.Option(None, help="Number of parallel test processes"),
    verbosity: int | None = typer.Option(None, help="Test framework verbosity"),
    output_dir: str | None = typer.Option(None, help="Directory for e2e.log and junit"),
    conformance_image: str | None = typer.Option(
        None, help="Conformance image (default derived from server version)"
    ),
    busybox_image: str | None = typer.Option(None, help="Image of the output container"),
    dry_run: bool = typer.Option(
        False, "--dry-run", help="Only list the tests that would run"
    ),
    test_repo_list: str | None = typer.Option(
        None, help="YAML file overriding test image registries"
    ),
    test_repo: str | None = typer.Option(None, help="Registry for test images"),
    extra_args: list[str] | None = typer.Option(  # noqa: B008
        None, help="Extra --key=value argument for e2e.test (repeatable)"
    ),
    extra_ginkgo_args: list[str] | None = typer.Option(  # noqa: B008
        None, help="Extra --key=value argument for ginkgo (repeatable)"
    ),
    startup_timeout: str | None = typer.Option(
        None, help="How long to wait for the Pod to start, e.g. 5m"
    ),
    disable_progress_status: bool = typer.Option(
        False, "--disable-progress-status", help="Disable periodic progress reports"
    ),
    progress_status_interval: str | None = typer.Option(
        None, help="Interval between progress reports, e.g. 30s"
    ),
    skip_preflight: bool = typer.Option(
        False, "--skip-preflight", help="Reuse resources left by a previous run"
    ),
    cleanup: bool = typer.Option(
        False, "--cleanup", help="Only delete the resources of a previous run"
    ),
    list_images: bool = typer.Option(
        False, "--list-images", help="Only list the images the tests would use"
    ),
    show_version: bool = typer.Option(
        False,
        "--version",
        callback=_show_version,
        is_eager=True,
        help="Show the runner version and exit",
    ),
) -> None:
    """Run the Kubernetes conformance suite in a cluster."""
    if cleanup and list_images:
        raise typer.BadParameter(
            "--cleanup and --list-images are mutually exclusive"
        )

    overrides: dict[str, object] = {
        "kubeconfig": kubeconfig,
        "namespace": namespace,
        "focus": focus,
        "skip": skip,
        "parallel": parallel,
        "verbosity": verbosity,
        "output_dir": output_dir,
        "conformance_image": conformance_image,
        "busybox_image": busybox_image,
        "dry_run": dry_run or None,
        "test_repo_list": test_repo_list,
        "test_repo": test_repo,
        "extra_args": extra_args or None,
        "extra_ginkgo_args": extra_ginkgo_args or None,
        "startup_timeout": startup_timeout,
        "disable_progress_status": disable_progress_status or None,
        "progress_status_interval": progress_status_interval,
        "skip_preflight": skip_preflight or None,
    }

    try:
        config = build_configuration(config_file, overrides)
    except (FileNotFoundError, ValueError) as e:
        logger.error(f"Invalid configuration: {e}")
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1)

    try:
        cluster = KubernetesCluster.from_kubeconfig(config.kubeconfig)
    except (ConfigException, OSError) as e:
        logger.error(f"Failed to load cluster configuration: {e}")
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1)

    orchestrator = ConformanceOrchestrator(cluster, config)

    if cleanup:
        try:
            asyncio.run(orchestrator.cleanup())
        except Exception as e:
            logger.exception("Cleanup failed")
            typer.echo(f"Error during cleanup: {e}", err=True)
            raise typer.Exit(code=1)
        return

    if list_images:
        try:
            asyncio.run(orchestrator.list_images())
        except Exception as e:
            logger.exception("Listing images failed")
            typer.echo(f"Error listing images: {e}", err=True)
            raise typer.Exit(code=1)
        return

    try:
        exit_code = asyncio.run(orchestrator.run())
    except Exception as e:
        logger.exception("Conformance run failed")
        typer.echo(f"Error running tests: {e}", err=True)
        raise typer.Exit(code=1)

    if exit_code == INDETERMINATE_EXIT_CODE:
        logger.error("Could not determine the test container's exit code")
        raise typer.Exit(code=1)
    if exit_code != 0:
        logger.error(f"Tests failed with exit code {exit_code}")
        raise typer.Exit(code=exit_code)
    logger.info("Tests passed")


if __name__ == "__main__":  # pragma: no cover
    app()
