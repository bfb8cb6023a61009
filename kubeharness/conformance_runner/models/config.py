"""Configuration for a conformance run, loaded from YAML and CLI flags."""

import os
import re
from collections.abc import Mapping
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from kubeharness.conformance_runner.constants import (
    CONFORMANCE_IMAGE_REPOSITORY,
    DEFAULT_BUSYBOX_IMAGE,
    DEFAULT_CONFIG_FILE_NAME,
    DEFAULT_NAMESPACE,
)

_DURATION_PATTERN = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}
_VERSION_PATTERN = re.compile(r"^v?(\d+)\.(\d+)\.(\d+)")


def parse_duration(value: object) -> float:
    """Convert a duration such as ``300``, ``"30s"`` or ``"1h5m"`` to seconds.

    Raises:
        ValueError: If the value is not a duration

    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid duration: {value!r}")
    if isinstance(value, int | float):
        return float(value)
    if not isinstance(value, str):
        raise ValueError(f"Invalid duration: {value!r}")

    text = value.strip()
    try:
        return float(text)
    except ValueError:
        pass

    matches = list(_DURATION_PATTERN.finditer(text))
    if not matches or "".join(m.group(0) for m in matches) != text:
        raise ValueError(f"Invalid duration: {value!r}")
    return sum(float(m.group(1)) * _DURATION_UNITS[m.group(2)] for m in matches)


def validate_args_flag(extra_args: list[str]) -> None:
    """Check every extra argument has the ``--key=value`` form.

    Raises:
        ValueError: If an argument is malformed

    """
    for kv in extra_args:
        key, sep, _ = kv.partition("=")
        if not sep:
            raise ValueError(f"expected [{kv}] to be of --key=value format")
        if not key.startswith("--") and key.count("--") != 1:
            raise ValueError(f"expected key [{key}] in [{kv}] to start with prefix --")


def trim_version(version: str) -> str:
    """Reduce a server version such as ``v1.30.2+k3s1`` to ``v1.30.2``.

    Raises:
        ValueError: If the version is not semver-like

    """
    match = _VERSION_PATTERN.match(version.strip())
    if not match:
        raise ValueError(f"error parsing conformance image tag: {version}")
    return "v" + ".".join(match.groups())


def resolve_kubeconfig(kubeconfig: str | None) -> str:
    """Resolve the kubeconfig path from the flag, $KUBECONFIG or the home dir."""
    if not kubeconfig:
        kubeconfig = os.environ.get("KUBECONFIG") or str(
            Path.home() / ".kube" / "config"
        )
    return os.path.expanduser(kubeconfig)


class RunConfiguration(BaseModel):
    """Settings for one conformance run."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    kubeconfig: str | None = Field(default=None, description="Path to kubeconfig")
    namespace: str = Field(
        default=DEFAULT_NAMESPACE, description="Namespace the test Pod runs in"
    )
    parallel: int = Field(default=1, ge=1, description="Parallel test processes")
    verbosity: int = Field(default=4, ge=0, description="Test framework verbosity")
    output_dir: str = Field(default=".", description="Directory for downloaded logs")
    focus: str | None = Field(default=None, description="Regex of tests to run")
    skip: str | None = Field(default=None, description="Regex of tests to skip")
    conformance_image: str | None = Field(
        default=None, description="Conformance image, derived from server version"
    )
    busybox_image: str = Field(
        default=DEFAULT_BUSYBOX_IMAGE, description="Image of the output container"
    )
    dry_run: bool = Field(default=False, description="Only list the tests to run")
    test_repo_list: str | None = Field(
        default=None, description="YAML file overriding test image registries"
    )
    test_repo: str | None = Field(
        default=None, description="Registry for test images"
    )
    extra_args: list[str] = Field(
        default_factory=list, description="Extra --key=value args for e2e.test"
    )
    extra_ginkgo_args: list[str] = Field(
        default_factory=list, description="Extra --key=value args for ginkgo"
    )
    startup_timeout: float = Field(
        default=300.0, gt=0, description="Seconds to wait for the Pod to start"
    )
    disable_progress_status: bool = Field(
        default=False, description="Disable periodic progress reports"
    )
    progress_status_interval: float = Field(
        default=30.0, gt=0, description="Seconds between progress reports"
    )
    skip_preflight: bool = Field(
        default=False, description="Reuse resources left over by a previous run"
    )
    config_map_conflict: Literal["inherit", "abort", "reuse"] = Field(
        default="inherit",
        description="What to do when the repo list ConfigMap already exists",
    )
    cleanup_timeout: float = Field(
        default=600.0, gt=0, description="Seconds to wait for namespace deletion"
    )

    @field_validator(
        "startup_timeout",
        "progress_status_interval",
        "cleanup_timeout",
        mode="before",
    )
    @classmethod
    def _parse_duration(cls, value: object) -> float:
        return parse_duration(value)

    @field_validator("extra_args", "extra_ginkgo_args")
    @classmethod
    def _check_args(cls, value: list[str]) -> list[str]:
        validate_args_flag(value)
        return value

    @model_validator(mode="after")
    def _check_parallel(self) -> "RunConfiguration":
        if self.parallel > 1:
            for arg in self.extra_ginkgo_args:
                if "--nodes=" in arg or "--procs=" in arg:
                    raise ValueError(
                        "--nodes/--procs is automatically set when --parallel "
                        "is greater than 1"
                    )
        return self

    @property
    def verbose_ginkgo(self) -> bool:
        """Whether ginkgo should print every spec (``-v``)."""
        return self.verbosity >= 6

    def with_server_version(self, server_version: str) -> "RunConfiguration":
        """Fill in the conformance image matching the cluster's version."""
        if self.conformance_image:
            return self
        image = f"{CONFORMANCE_IMAGE_REPOSITORY}:{trim_version(server_version)}"
        return self.model_copy(update={"conformance_image": image})


def default_config_file() -> Path:
    """Return the per-user config file, under ``$XDG_CONFIG_HOME``."""
    config_home = os.environ.get("XDG_CONFIG_HOME") or str(Path.home() / ".config")
    return Path(config_home) / DEFAULT_CONFIG_FILE_NAME


def load_configuration(config_file: Path) -> RunConfiguration:
    """Load a run configuration from a YAML file.

    Args:
        config_file: Path to the YAML file

    Returns:
        Parsed configuration

    Raises:
        FileNotFoundError: If the file doesn't exist
        ValueError: If YAML is invalid or doesn't match schema

    """
    if not config_file.exists():
        raise FileNotFoundError(f"Config file not found: {config_file}")

    try:
        with config_file.open() as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in {config_file}: {e}") from e

    if data is None:
        return RunConfiguration()

    try:
        return RunConfiguration.model_validate(data)
    except Exception as e:
        raise ValueError(f"Invalid configuration file {config_file}: {e}") from e


def merge_overrides(
    config: RunConfiguration, overrides: Mapping[str, object]
) -> RunConfiguration:
    """Apply CLI values on top of a configuration, ignoring unset ones.

    The result is validated again so invalid flag values are rejected.
    """
    data = config.model_dump()
    data.update({k: v for k, v in overrides.items() if v is not None})
    return RunConfiguration.model_validate(data)
