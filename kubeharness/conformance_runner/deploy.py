"""Create the namespace, RBAC objects and test Pod for a conformance run."""

import logging
from pathlib import Path

from pydantic import BaseModel, Field

from kubeharness.conformance_runner.cluster.base import ClusterAPI, ResourceKind
from kubeharness.conformance_runner.constants import POD_NAME
from kubeharness.conformance_runner.errors import (
    AlreadyExistsError,
    ConformanceError,
    PreflightConflictError,
)
from kubeharness.conformance_runner.manifests import (
    build_cluster_role,
    build_cluster_role_binding,
    build_conformance_pod,
    build_namespace,
    build_repo_list_config_map,
    build_service_account,
)
from kubeharness.conformance_runner.models.config import RunConfiguration
from kubeharness.conformance_runner.models.workload import Workload
from kubeharness.conformance_runner.waiter import ReadinessWaiter, workload_started

logger = logging.getLogger(__name__)


class ResourceRef(BaseModel):
    """Kind and name of a cluster object."""

    kind: str = Field(..., description="Object kind")
    name: str = Field(..., description="Object name")


class DeploymentReport(BaseModel):
    """What a deployment created and what it reused."""

    created: list[ResourceRef] = Field(default_factory=list)
    reused: list[ResourceRef] = Field(default_factory=list)
    workload: Workload | None = Field(
        default=None, description="Pod state once it left Pending"
    )


class DeploymentSequencer:
    """Creates the objects of a run in order and waits for the Pod to start."""

    def __init__(
        self,
        cluster: ClusterAPI,
        config: RunConfiguration,
        waiter: ReadinessWaiter | None = None,
    ) -> None:
        """Initialize sequencer with the cluster and run configuration."""
        self.cluster = cluster
        self.config = config
        self.waiter = waiter or ReadinessWaiter(cluster)

    async def deploy(self) -> DeploymentReport:
        """Create every object of the run, then wait for the Pod to start.

        Objects are created in order; the first failure stops the sequence.
        Partially created objects are left for the caller to clean up.

        Returns:
            Report of created and reused objects

        Raises:
            PreflightConflictError: If an object exists and reuse is disabled
            ClusterError: If the cluster rejected a creation
            WorkloadFailedError: If the Pod failed to start
            WaitTimeoutError: If the Pod did not start in time

        """
        namespace = self.config.namespace
        reuse = self.config.skip_preflight
        repo_list = self._read_repo_list()
        pod = build_conformance_pod(self.config, with_repo_list=repo_list is not None)
        report = DeploymentReport()

        await self._create(ResourceKind.NAMESPACE, build_namespace(namespace), reuse, report)
        await self._create(
            ResourceKind.SERVICE_ACCOUNT, build_service_account(namespace), reuse, report
        )
        await self._create(
            ResourceKind.CLUSTER_ROLE, build_cluster_role(namespace), reuse, report
        )
        await self._create(
            ResourceKind.CLUSTER_ROLE_BINDING,
            build_cluster_role_binding(namespace),
            reuse,
            report,
        )
        if repo_list is not None:
            await self._create(
                ResourceKind.CONFIG_MAP,
                build_repo_list_config_map(namespace, repo_list),
                self._reuse_config_map(),
                report,
            )
        await self._create(ResourceKind.POD, pod, reuse, report)

        logger.info(f"Waiting up to {self.config.startup_timeout:g}s for Pod to start...")
        workload = await self.waiter.wait(
            ResourceKind.POD,
            namespace,
            POD_NAME,
            workload_started,
            self.config.startup_timeout,
        )
        if isinstance(workload, Workload):
            report.workload = workload
            logger.info(f"Pod {POD_NAME} is {workload.phase}.")
        return report

    async def _create(
        self,
        kind: ResourceKind,
        body: object,
        reuse: bool,
        report: DeploymentReport,
    ) -> None:
        name = body.metadata.name  # type: ignore[attr-defined]
        namespace = None if kind.cluster_scoped else self.config.namespace
        try:
            created = await self.cluster.create(kind, body, namespace)
        except AlreadyExistsError:
            if not reuse:
                raise PreflightConflictError(
                    f"{kind.value} {name} already exists, please run cleanup first"
                ) from None
            logger.info(f"Using existing {kind.value} {name}.")
            report.reused.append(ResourceRef(kind=kind.value, name=name))
            return

        logger.info(f"Created {kind.value} {created}.")
        report.created.append(ResourceRef(kind=kind.value, name=created))

    def _reuse_config_map(self) -> bool:
        policy = self.config.config_map_conflict
        if policy == "inherit":
            return self.config.skip_preflight
        return policy == "reuse"

    def _read_repo_list(self) -> str | None:
        filename = self.config.test_repo_list
        if not filename:
            return None
        try:
            return Path(filename).read_text()
        except OSError as e:
            raise ConformanceError(f"failed to read repo list {filename}: {e}") from e
