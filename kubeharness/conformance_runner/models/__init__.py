"""Data models for configuration, observed cluster objects and stream output."""

from kubeharness.conformance_runner.models.config import (
    RunConfiguration,
    load_configuration,
    merge_overrides,
)
from kubeharness.conformance_runner.models.stream import (
    ProgressSnapshot,
    StreamMessage,
)
from kubeharness.conformance_runner.models.workload import (
    ContainerState,
    NamespaceState,
    WatchEvent,
    Workload,
)

__all__ = [
    "ContainerState",
    "NamespaceState",
    "ProgressSnapshot",
    "RunConfiguration",
    "StreamMessage",
    "WatchEvent",
    "Workload",
    "load_configuration",
    "merge_overrides",
]
