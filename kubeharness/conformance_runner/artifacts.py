"""Download the result files written by the test suite."""

import logging
from pathlib import Path

from kubeharness.conformance_runner.cluster.base import ClusterAPI
from kubeharness.conformance_runner.constants import (
    E2E_LOG_FILE,
    JUNIT_FILE,
    OUTPUT_CONTAINER,
    POD_NAME,
    RESULTS_DIR,
)

logger = logging.getLogger(__name__)

RESULT_FILES = (E2E_LOG_FILE, JUNIT_FILE)


async def fetch_files(
    cluster: ClusterAPI, namespace: str, output_dir: str | Path
) -> list[Path]:
    """Copy the suite's log and JUnit report out of the output container.

    Args:
        cluster: Cluster the conformance Pod runs in
        namespace: Namespace of the conformance Pod
        output_dir: Local directory to write to, created if missing

    Returns:
        Paths of the written files

    Raises:
        TransportError: If a file could not be read from the container
        OSError: If a file could not be written locally

    """
    target = Path(output_dir)
    target.mkdir(parents=True, exist_ok=True)

    written: list[Path] = []
    for filename in RESULT_FILES:
        content = await cluster.read_file(
            namespace, POD_NAME, OUTPUT_CONTAINER, f"{RESULTS_DIR}/{filename}"
        )
        path = target / filename
        path.write_text(content)
        logger.info(f"Downloaded {filename} to {path}")
        written.append(path)

    return written
