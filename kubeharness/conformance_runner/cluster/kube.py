"""Cluster resource API backed by the official Kubernetes Python client."""

import asyncio
import codecs
import logging
import threading
from collections.abc import AsyncIterator, Callable, Iterable, Iterator, Sequence
from contextlib import asynccontextmanager
from typing import Any, NamedTuple

import urllib3
import websocket
from kubernetes import client, config, watch
from kubernetes.client.rest import ApiException
from kubernetes.stream import stream

from kubeharness.conformance_runner.cluster.base import (
    ClusterAPI,
    ExecResult,
    ResourceKind,
)
from kubeharness.conformance_runner.errors import (
    AlreadyExistsError,
    ClusterError,
    NotFoundError,
    TransportError,
)
from kubeharness.conformance_runner.models.config import resolve_kubeconfig
from kubeharness.conformance_runner.models.workload import (
    ContainerState,
    NamespaceState,
    WatchEvent,
    Workload,
)

logger = logging.getLogger(__name__)

_KNOWN_PHASES = {"Pending", "Running", "Succeeded", "Failed", "Unknown"}
_END = object()


class _Operations(NamedTuple):
    create: Callable[..., Any]
    delete: Callable[..., Any]
    list: Callable[..., Any]


def translate_api_exception(e: ApiException, action: str) -> ClusterError:
    """Map an API server error to the runner's exception types."""
    message = f"failed to {action}: {e.status} {e.reason}"
    if e.status == 409:
        return AlreadyExistsError(message, e.status)
    if e.status == 404:
        return NotFoundError(message, e.status)
    return ClusterError(message, e.status)


def workload_from_pod(pod: client.V1Pod) -> Workload:
    """Convert a Pod returned by the API into a Workload."""
    containers: dict[str, ContainerState] = {}
    status = pod.status
    for container_status in (status.container_statuses or []) if status else []:
        state = container_status.state
        if state is not None and state.terminated is not None:
            containers[container_status.name] = ContainerState(
                state="terminated",
                reason=state.terminated.reason,
                message=state.terminated.message,
                exit_code=state.terminated.exit_code,
            )
        elif state is not None and state.running is not None:
            containers[container_status.name] = ContainerState(state="running")
        else:
            waiting = state.waiting if state is not None else None
            containers[container_status.name] = ContainerState(
                state="waiting",
                reason=waiting.reason if waiting else None,
                message=waiting.message if waiting else None,
            )

    phase = status.phase if status and status.phase in _KNOWN_PHASES else "Unknown"
    return Workload(
        namespace=pod.metadata.namespace,
        name=pod.metadata.name,
        phase=phase,
        containers=containers,
    )


def namespace_state(namespace: client.V1Namespace) -> NamespaceState:
    """Convert a Namespace returned by the API into a NamespaceState."""
    phase = namespace.status.phase if namespace.status else None
    return NamespaceState(name=namespace.metadata.name, phase=phase or "Active")


def _to_model(obj: object) -> Workload | NamespaceState | None:
    if isinstance(obj, client.V1Pod):
        return workload_from_pod(obj)
    if isinstance(obj, client.V1Namespace):
        return namespace_state(obj)
    return None


def _iter_lines(chunks: Iterable[bytes]) -> Iterator[str]:
    """Split a byte stream into decoded lines, keeping partial lines buffered."""
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    pending = ""
    for chunk in chunks:
        pending += decoder.decode(chunk)
        *lines, pending = pending.split("\n")
        yield from (line.rstrip("\r") for line in lines)
    pending += decoder.decode(b"", final=True)
    if pending:
        yield pending.rstrip("\r")


class _ThreadPump:
    """Drive a blocking iterator from a daemon thread into an asyncio queue."""

    def __init__(
        self,
        produce: Callable[[], Iterable[object]],
        on_stop: Callable[[], None] | None = None,
    ) -> None:
        self.queue: asyncio.Queue[object] = asyncio.Queue()
        self._loop = asyncio.get_running_loop()
        self._produce = produce
        self._on_stop = on_stop
        self._stopped = threading.Event()

    def start(self) -> None:
        threading.Thread(target=self._run, daemon=True).start()

    def stop(self) -> None:
        self._stopped.set()
        if self._on_stop is not None:
            self._on_stop()

    def _run(self) -> None:
        try:
            for item in self._produce():
                if self._stopped.is_set():
                    break
                self._put(item)
        except Exception as e:  # noqa: BLE001
            if not self._stopped.is_set():
                self._put(e)
        finally:
            self._put(_END)

    def _put(self, item: object) -> None:
        if self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(self.queue.put_nowait, item)

    async def drain(self, description: str) -> AsyncIterator[Any]:
        while True:
            item = await self.queue.get()
            if item is _END:
                return
            if isinstance(item, BaseException):
                raise TransportError(f"{description} failed: {item}") from item
            yield item


class _WatchConnection:
    """A watch whose open response can be closed from another thread.

    ``Watch.stop`` only takes effect after the next event arrives, so stopping
    also closes the response the watch thread is blocked reading.
    """

    def __init__(self, list_func: Callable[..., Any]) -> None:
        self.watcher = watch.Watch()
        self._list_func = list_func
        self._lock = threading.Lock()
        self._responses: list[Any] = []
        self._stopped = False

    def stream(self, *args: Any, **kwargs: Any) -> Iterator[dict[str, Any]]:
        def request(*request_args: Any, **request_kwargs: Any) -> Any:
            resp = self._list_func(*request_args, **request_kwargs)
            with self._lock:
                if not self._stopped:
                    self._responses.append(resp)
                    return resp
            resp.close()
            return resp

        # Watch reads the response type from the API method's docstring.
        request.__doc__ = self._list_func.__doc__
        return self.watcher.stream(request, *args, **kwargs)

    def stop(self) -> None:
        self.watcher.stop()
        with self._lock:
            self._stopped = True
            responses, self._responses = self._responses, []
        for resp in responses:
            resp.close()


class KubernetesCluster(ClusterAPI):
    """ClusterAPI implementation using the synchronous Kubernetes client.

    Short calls run in worker threads through ``asyncio.to_thread``; watches
    and followed logs are pumped from daemon threads so they can be abandoned
    promptly on cancellation.
    """

    def __init__(self, api_client: client.ApiClient) -> None:
        """Initialize the API groups from a configured ApiClient."""
        self.api_client = api_client
        self.host = api_client.configuration.host
        self.core_v1 = client.CoreV1Api(api_client)
        self.rbac_v1 = client.RbacAuthorizationV1Api(api_client)
        self.version_api = client.VersionApi(api_client)
        self._operations = {
            ResourceKind.NAMESPACE: _Operations(
                self.core_v1.create_namespace,
                self.core_v1.delete_namespace,
                self.core_v1.list_namespace,
            ),
            ResourceKind.SERVICE_ACCOUNT: _Operations(
                self.core_v1.create_namespaced_service_account,
                self.core_v1.delete_namespaced_service_account,
                self.core_v1.list_namespaced_service_account,
            ),
            ResourceKind.CLUSTER_ROLE: _Operations(
                self.rbac_v1.create_cluster_role,
                self.rbac_v1.delete_cluster_role,
                self.rbac_v1.list_cluster_role,
            ),
            ResourceKind.CLUSTER_ROLE_BINDING: _Operations(
                self.rbac_v1.create_cluster_role_binding,
                self.rbac_v1.delete_cluster_role_binding,
                self.rbac_v1.list_cluster_role_binding,
            ),
            ResourceKind.CONFIG_MAP: _Operations(
                self.core_v1.create_namespaced_config_map,
                self.core_v1.delete_namespaced_config_map,
                self.core_v1.list_namespaced_config_map,
            ),
            ResourceKind.POD: _Operations(
                self.core_v1.create_namespaced_pod,
                self.core_v1.delete_namespaced_pod,
                self.core_v1.list_namespaced_pod,
            ),
        }

    @classmethod
    def from_kubeconfig(cls, kubeconfig: str | None = None) -> "KubernetesCluster":
        """Build a client from in-cluster config or a kubeconfig file."""
        configuration = client.Configuration()
        try:
            config.load_incluster_config(client_configuration=configuration)
            logger.info("Using in-cluster configuration")
        except config.ConfigException:
            path = resolve_kubeconfig(kubeconfig)
            logger.info(f"Using kubeconfig {path}")
            config.load_kube_config(config_file=path, client_configuration=configuration)
        return cls(client.ApiClient(configuration))

    async def _call(
        self, action: str, func: Callable[..., Any], *args: Any, **kwargs: Any
    ) -> Any:
        try:
            return await asyncio.to_thread(func, *args, **kwargs)
        except ApiException as e:
            raise translate_api_exception(e, action) from e
        except (
            urllib3.exceptions.HTTPError,
            websocket.WebSocketException,
            OSError,
        ) as e:
            raise TransportError(f"failed to {action}: {e}") from e

    def _scope(self, kind: ResourceKind, namespace: str | None) -> tuple[str, ...]:
        if kind.cluster_scoped:
            return ()
        if not namespace:
            raise ValueError(f"{kind.value} requires a namespace")
        return (namespace,)

    async def create(
        self, kind: ResourceKind, body: object, namespace: str | None = None
    ) -> str:
        """Create an object and return its name."""
        ops = self._operations[kind]
        created = await self._call(
            f"create {kind.value}", ops.create, *self._scope(kind, namespace), body
        )
        return str(created.metadata.name)

    async def delete(
        self, kind: ResourceKind, name: str, namespace: str | None = None
    ) -> None:
        """Delete an object."""
        ops = self._operations[kind]
        await self._call(
            f"delete {kind.value} {name}",
            ops.delete,
            name,
            *self._scope(kind, namespace),
        )

    async def get_workload(self, namespace: str, name: str) -> Workload | None:
        """Return the current state of a Pod, or None if it does not exist."""
        try:
            pod = await self._call(
                f"get Pod {name}", self.core_v1.read_namespaced_pod, name, namespace
            )
        except NotFoundError:
            return None
        return workload_from_pod(pod)

    @asynccontextmanager
    async def watch(
        self, kind: ResourceKind, namespace: str | None, name: str
    ) -> AsyncIterator[AsyncIterator[WatchEvent]]:
        """Watch a single object by name (list, then watch from that version)."""
        ops = self._operations[kind]
        scope = self._scope(kind, namespace)
        selector = f"metadata.name={name}"
        listed = await self._call(
            f"list {kind.value}", ops.list, *scope, field_selector=selector
        )
        connection = _WatchConnection(ops.list)

        def produce() -> Iterator[WatchEvent]:
            try:
                for event in connection.stream(
                    *scope,
                    field_selector=selector,
                    resource_version=listed.metadata.resource_version,
                ):
                    if event["type"] == "ERROR":
                        raw = event.get("raw_object") or {}
                        yield WatchEvent(kind="ERROR", message=str(raw.get("message")))
                        return
                    yield WatchEvent(
                        kind=event["type"], object=_to_model(event["object"])
                    )
            except ApiException as e:
                yield WatchEvent(kind="ERROR", message=f"{e.status} {e.reason}")

        pump = _ThreadPump(produce, on_stop=connection.stop)
        for item in listed.items:
            pump.queue.put_nowait(WatchEvent(kind="ADDED", object=_to_model(item)))
        pump.start()
        try:
            yield pump.drain(f"watching {kind.value} {name}")
        finally:
            pump.stop()

    async def exec(
        self, namespace: str, pod: str, container: str, command: Sequence[str]
    ) -> ExecResult:
        """Run a command in a container and collect its output."""
        return await self._call(
            f"exec in {pod}/{container}",
            self._exec,
            namespace,
            pod,
            container,
            list(command),
        )

    def _exec(
        self, namespace: str, pod: str, container: str, command: list[str]
    ) -> ExecResult:
        resp = stream(
            self.core_v1.connect_get_namespaced_pod_exec,
            pod,
            namespace,
            container=container,
            command=command,
            stderr=True,
            stdin=False,
            stdout=True,
            tty=False,
            _preload_content=False,
        )
        stdout: list[str] = []
        stderr: list[str] = []
        try:
            while resp.is_open():
                resp.update(timeout=1)
                if resp.peek_stdout():
                    stdout.append(resp.read_stdout())
                if resp.peek_stderr():
                    stderr.append(resp.read_stderr())
            return_code = resp.returncode
        finally:
            resp.close()
        return ExecResult(
            stdout="".join(stdout), stderr="".join(stderr), return_code=return_code
        )

    async def logs(
        self,
        namespace: str,
        pod: str,
        container: str,
        *,
        follow: bool = False,
        tail_lines: int | None = None,
    ) -> AsyncIterator[str]:
        """Yield a container's log lines, without trailing newlines."""
        resp = await self._call(
            f"get logs of {pod}/{container}",
            self.core_v1.read_namespaced_pod_log,
            pod,
            namespace,
            container=container,
            follow=follow,
            tail_lines=tail_lines,
            _preload_content=False,
        )
        pump = _ThreadPump(
            lambda: _iter_lines(resp.stream(amt=None, decode_content=False)),
            on_stop=resp.close,
        )
        pump.start()
        try:
            async for line in pump.drain(f"streaming logs of {pod}/{container}"):
                yield line
        finally:
            pump.stop()

    async def server_version(self) -> str:
        """Return the API server's git version."""
        info = await self._call("get server version", self.version_api.get_code)
        return str(info.git_version)
