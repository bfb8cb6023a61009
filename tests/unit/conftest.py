"""Shared fixtures: an in-memory cluster implementing ClusterAPI."""

import asyncio
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager

import pytest

from kubeharness.conformance_runner.cluster.base import (
    ClusterAPI,
    ExecResult,
    ResourceKind,
)
from kubeharness.conformance_runner.errors import AlreadyExistsError, NotFoundError
from kubeharness.conformance_runner.models.config import RunConfiguration
from kubeharness.conformance_runner.models.workload import (
    NamespaceState,
    WatchEvent,
    Workload,
)

Key = tuple[ResourceKind, str | None, str]


class FakeCluster(ClusterAPI):
    """In-memory cluster with scripted watch events and log streams.

    * ``events[(kind, name)]`` are delivered after the current state when a
      watch on that object is opened.
    * ``log_streams`` feed successive ``follow=True`` calls. Items are log
      lines, exceptions (raised) or ``asyncio.Event`` (awaited).
    * ``log_tail[pod]`` is served to non-following log reads.
    * ``files[(pod, container, path)]`` is served to ``cat``; a list yields
      one value per read, repeating the last one. Exceptions are raised.
    * ``create_errors[kind]`` is raised when creating an object of that kind.
    """

    host = "https://fake-cluster:6443"

    def __init__(self) -> None:
        """Initialize empty cluster."""
        self.objects: dict[Key, object] = {}
        self.workloads: dict[tuple[str, str], Workload] = {}
        self.events: dict[tuple[ResourceKind, str], list[WatchEvent]] = {}
        self.log_streams: list[list[object]] = []
        self.log_tail: dict[str, list[str]] = {}
        self.files: dict[tuple[str, str, str], str | list[object]] = {}
        self.version = "v1.30.2"
        self.close_watches = True
        self.created: list[tuple[ResourceKind, str]] = []
        self.deleted: list[tuple[ResourceKind, str]] = []
        self.follow_calls = 0
        self.tail_reads = 0
        self.delete_errors: dict[Key, Exception] = {}
        self.create_errors: dict[ResourceKind, Exception] = {}
        self._watchers: dict[tuple[ResourceKind, str], list[asyncio.Queue]] = {}

    def _key(self, kind: ResourceKind, name: str, namespace: str | None) -> Key:
        return (kind, None if kind.cluster_scoped else namespace, name)

    async def create(
        self, kind: ResourceKind, body: object, namespace: str | None = None
    ) -> str:
        if kind in self.create_errors:
            raise self.create_errors[kind]
        metadata = body.metadata  # type: ignore[attr-defined]
        name = metadata.name or f"{metadata.generate_name}x7k2q"
        key = self._key(kind, name, namespace)
        if key in self.objects:
            raise AlreadyExistsError(f"{kind.value} {name} already exists", 409)
        self.objects[key] = body
        self.created.append((kind, name))
        if kind is ResourceKind.POD and namespace is not None:
            self.workloads[(namespace, name)] = Workload(
                namespace=namespace, name=name, phase="Pending"
            )
        return name

    async def delete(
        self, kind: ResourceKind, name: str, namespace: str | None = None
    ) -> None:
        key = self._key(kind, name, namespace)
        if key in self.delete_errors:
            raise self.delete_errors[key]
        if key not in self.objects:
            raise NotFoundError(f"{kind.value} {name} not found", 404)
        del self.objects[key]
        self.deleted.append((kind, name))
        if kind is ResourceKind.POD and namespace is not None:
            self.workloads.pop((namespace, name), None)
        if kind is ResourceKind.NAMESPACE:
            for other in [k for k in self.objects if k[1] == name]:
                del self.objects[other]
            self.workloads = {
                k: v for k, v in self.workloads.items() if k[0] != name
            }
        for queue in self._watchers.get((kind, name), []):
            queue.put_nowait(WatchEvent(kind="DELETED", object=None))

    async def get_workload(self, namespace: str, name: str) -> Workload | None:
        return self.workloads.get((namespace, name))

    def _current(
        self, kind: ResourceKind, namespace: str | None, name: str
    ) -> Workload | NamespaceState | None:
        if kind is ResourceKind.POD and namespace is not None:
            return self.workloads.get((namespace, name))
        if kind is ResourceKind.NAMESPACE and self._key(kind, name, None) in self.objects:
            return NamespaceState(name=name)
        return None

    @asynccontextmanager
    async def watch(
        self, kind: ResourceKind, namespace: str | None, name: str
    ) -> AsyncIterator[AsyncIterator[WatchEvent]]:
        queue: asyncio.Queue[WatchEvent] = asyncio.Queue()
        current = self._current(kind, namespace, name)
        if current is not None:
            queue.put_nowait(WatchEvent(kind="ADDED", object=current))
        for event in self.events.pop((kind, name), []):
            queue.put_nowait(event)
        watchers = self._watchers.setdefault((kind, name), [])
        watchers.append(queue)

        async def events() -> AsyncIterator[WatchEvent]:
            while True:
                if queue.empty() and self.close_watches:
                    return
                yield await queue.get()

        try:
            yield events()
        finally:
            watchers.remove(queue)

    async def exec(
        self, namespace: str, pod: str, container: str, command: Sequence[str]
    ) -> ExecResult:
        path = command[-1]
        content = self.files.get((pod, container, path))
        if content is None:
            return ExecResult(
                stderr=f"cat: can't open '{path}': No such file", return_code=1
            )
        if isinstance(content, list):
            value = content.pop(0) if len(content) > 1 else content[0]
            if isinstance(value, Exception):
                raise value
            return ExecResult(stdout=str(value), return_code=0)
        return ExecResult(stdout=content, return_code=0)

    async def logs(
        self,
        namespace: str,
        pod: str,
        container: str,
        *,
        follow: bool = False,
        tail_lines: int | None = None,
    ) -> AsyncIterator[str]:
        if not follow:
            self.tail_reads += 1
            lines = self.log_tail.get(pod, [])
            for line in lines[-tail_lines:] if tail_lines else lines:
                yield line
            return

        self.follow_calls += 1
        stream = self.log_streams.pop(0) if self.log_streams else []
        for item in stream:
            if isinstance(item, Exception):
                raise item
            if isinstance(item, asyncio.Event):
                await item.wait()
                continue
            yield str(item)

    async def server_version(self) -> str:
        return self.version


@pytest.fixture(autouse=True)
def config_home(tmp_path, monkeypatch) -> None:
    """Point the per-user config directory at an empty directory."""
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))


@pytest.fixture
def cluster() -> FakeCluster:
    """Create an empty fake cluster."""
    return FakeCluster()


@pytest.fixture
def config() -> RunConfiguration:
    """Create a run configuration with the conformance image resolved."""
    return RunConfiguration(
        namespace="conformance",
        conformance_image="registry.k8s.io/conformance:v1.30.2",
        startup_timeout=5,
        cleanup_timeout=5,
    )
