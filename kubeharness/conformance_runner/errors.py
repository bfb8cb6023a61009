"""Exceptions raised across the conformance run lifecycle."""


class ConformanceError(RuntimeError):
    """Base class for errors that abort a conformance run."""


class PreflightConflictError(ConformanceError):
    """A resource already exists and reusing it was not requested."""


class WorkloadFailedError(ConformanceError):
    """The workload entered a failure state (image pull, crash loop...)."""


class TransportError(ConformanceError):
    """A log, exec or watch stream failed."""


class WatchError(TransportError):
    """The cluster reported an error event on a watch."""


class WaitTimeoutError(ConformanceError, TimeoutError):
    """A wait deadline elapsed before the expected state was observed."""

    def __init__(self, message: str, last_phase: str = "Unknown") -> None:
        """Keep the last observed phase for diagnosis."""
        super().__init__(message)
        self.last_phase = last_phase


class ProgressParseError(ConformanceError, ValueError):
    """Progress could not be inferred from the test log."""


class ClusterError(ConformanceError):
    """A cluster API call failed."""

    def __init__(self, message: str, status: int | None = None) -> None:
        """Keep the HTTP status reported by the API server."""
        super().__init__(message)
        self.status = status


class AlreadyExistsError(ClusterError):
    """The object to create already exists."""


class NotFoundError(ClusterError):
    """The object does not exist."""
