"""Models for cluster objects observed while a conformance run is live."""

from typing import Literal

from pydantic import BaseModel, Field

WorkloadPhase = Literal["Pending", "Running", "Succeeded", "Failed", "Unknown"]
TERMINAL_PHASES: frozenset[str] = frozenset({"Succeeded", "Failed"})


class ContainerState(BaseModel):
    """State of a single container inside the workload."""

    state: Literal["waiting", "running", "terminated"] = Field(
        ..., description="Which of the container state variants is set"
    )
    reason: str | None = Field(default=None, description="Machine readable reason")
    message: str | None = Field(default=None, description="Human readable detail")
    exit_code: int | None = Field(
        default=None, description="Exit code, only set once terminated"
    )

    @property
    def terminated(self) -> bool:
        """Whether the container has exited."""
        return self.state == "terminated"


class Workload(BaseModel):
    """The conformance Pod as seen by the runner."""

    namespace: str = Field(..., description="Namespace the Pod lives in")
    name: str = Field(..., description="Pod name")
    phase: WorkloadPhase = Field(default="Unknown", description="Aggregate phase")
    containers: dict[str, ContainerState] = Field(
        default_factory=dict, description="Container name to container state"
    )

    @property
    def terminal(self) -> bool:
        """Whether the aggregate phase will not change anymore."""
        return self.phase in TERMINAL_PHASES

    def container(self, name: str) -> ContainerState | None:
        """Return the state of the named container, if reported yet."""
        return self.containers.get(name)


class NamespaceState(BaseModel):
    """A namespace as seen by the runner."""

    name: str = Field(..., description="Namespace name")
    phase: str = Field(default="Active", description="Active or Terminating")


class WatchEvent(BaseModel):
    """A single change notification from a cluster watch."""

    kind: Literal["ADDED", "MODIFIED", "DELETED", "ERROR"] = Field(
        ..., description="Type of change"
    )
    object: Workload | NamespaceState | None = Field(
        default=None, description="Object the event is about"
    )
    message: str | None = Field(
        default=None, description="Error detail for ERROR events"
    )
