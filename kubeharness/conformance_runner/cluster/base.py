"""Abstract base class for the cluster resource API used by the runner."""

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Sequence
from contextlib import AbstractAsyncContextManager
from enum import Enum

from pydantic import BaseModel, Field

from kubeharness.conformance_runner.errors import TransportError
from kubeharness.conformance_runner.models.workload import WatchEvent, Workload


class ResourceKind(str, Enum):
    """Kinds of objects the runner creates, watches or deletes."""

    NAMESPACE = "Namespace"
    SERVICE_ACCOUNT = "ServiceAccount"
    CLUSTER_ROLE = "ClusterRole"
    CLUSTER_ROLE_BINDING = "ClusterRoleBinding"
    CONFIG_MAP = "ConfigMap"
    POD = "Pod"

    @property
    def cluster_scoped(self) -> bool:
        """Whether objects of this kind live outside any namespace."""
        return self in {
            ResourceKind.NAMESPACE,
            ResourceKind.CLUSTER_ROLE,
            ResourceKind.CLUSTER_ROLE_BINDING,
        }


class ExecResult(BaseModel):
    """Output of a command executed inside a container."""

    stdout: str = Field(default="", description="Captured standard output")
    stderr: str = Field(default="", description="Captured standard error")
    return_code: int | None = Field(
        default=None, description="Exit code, when the server reported one"
    )


class ClusterAPI(ABC):
    """Abstract access to a Kubernetes cluster.

    Implementations must be safe for concurrent independent calls.
    """

    host: str = ""

    @abstractmethod
    async def create(
        self, kind: ResourceKind, body: object, namespace: str | None = None
    ) -> str:
        """Create an object and return its name.

        Args:
            kind: Kind of the object
            body: Object manifest
            namespace: Target namespace, ignored for cluster-scoped kinds

        Returns:
            Name of the created object (resolves generated names)

        Raises:
            AlreadyExistsError: If the object already exists
            ClusterError: On any other API failure

        """

    @abstractmethod
    async def delete(
        self, kind: ResourceKind, name: str, namespace: str | None = None
    ) -> None:
        """Delete an object.

        Raises:
            NotFoundError: If the object does not exist
            ClusterError: On any other API failure

        """

    @abstractmethod
    async def get_workload(self, namespace: str, name: str) -> Workload | None:
        """Return the current state of a Pod, or None if it does not exist."""

    @abstractmethod
    def watch(
        self, kind: ResourceKind, namespace: str | None, name: str
    ) -> AbstractAsyncContextManager[AsyncIterator[WatchEvent]]:
        """Watch a single object by name.

        The watch is established when the context is entered. The current
        state of the object, if it exists, is delivered first as an ADDED
        event. Leaving the context releases the connection.
        """

    @abstractmethod
    async def exec(
        self, namespace: str, pod: str, container: str, command: Sequence[str]
    ) -> ExecResult:
        """Run a command in a container and collect its output."""

    @abstractmethod
    def logs(
        self,
        namespace: str,
        pod: str,
        container: str,
        *,
        follow: bool = False,
        tail_lines: int | None = None,
    ) -> AsyncIterator[str]:
        """Yield a container's log lines, without trailing newlines."""

    @abstractmethod
    async def server_version(self) -> str:
        """Return the API server's git version, e.g. ``v1.30.2``."""

    async def read_logs(
        self,
        namespace: str,
        pod: str,
        container: str,
        tail_lines: int | None = None,
    ) -> list[str]:
        """Read a container's current log lines without following."""
        return [
            line
            async for line in self.logs(
                namespace, pod, container, follow=False, tail_lines=tail_lines
            )
        ]

    async def read_file(
        self, namespace: str, pod: str, container: str, path: str
    ) -> str:
        """Read a file from a container.

        Raises:
            TransportError: If the file could not be read

        """
        result = await self.exec(namespace, pod, container, ["cat", path])
        if result.return_code not in (None, 0):
            raise TransportError(
                f"reading {path} from {pod}/{container} failed "
                f"(code {result.return_code}): {result.stderr.strip()}"
            )
        return result.stdout
