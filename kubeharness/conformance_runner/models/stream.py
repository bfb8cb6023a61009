"""Models exchanged on the log stream coordinator's output channel."""

from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, Field


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ProgressSnapshot(BaseModel):
    """Test counts inferred from the test log at a point in time."""

    total_tests: int = Field(..., ge=0, description="Tests announced for this run")
    completed_tests: int = Field(..., ge=0, description="Tests finished so far")
    observed_at: datetime = Field(
        default_factory=_now, description="When the log was read"
    )

    @property
    def finished(self) -> bool:
        """Whether every announced test has completed."""
        return self.completed_tests >= self.total_tests

    @property
    def percent(self) -> float:
        """Completion percentage, 100 when no tests were announced."""
        if self.total_tests == 0:
            return 100.0
        return min(100.0, 100.0 * self.completed_tests / self.total_tests)


class StreamMessage(BaseModel):
    """Unit of output produced by the log stream coordinator."""

    kind: Literal["line", "progress", "error", "done"] = Field(
        ..., description="Which variant this message is"
    )
    text: str | None = Field(default=None, description="Log line, without newline")
    snapshot: ProgressSnapshot | None = Field(
        default=None, description="Progress overlay"
    )
    error: str | None = Field(default=None, description="Error description")
    fatal: bool = Field(default=False, description="Whether the error ends the run")

    @classmethod
    def line(cls, text: str) -> "StreamMessage":
        return cls(kind="line", text=text)

    @classmethod
    def progress(cls, snapshot: ProgressSnapshot) -> "StreamMessage":
        return cls(kind="progress", snapshot=snapshot)

    @classmethod
    def failure(cls, error: str, fatal: bool = False) -> "StreamMessage":
        return cls(kind="error", error=error, fatal=fatal)

    @classmethod
    def done(cls) -> "StreamMessage":
        return cls(kind="done")
