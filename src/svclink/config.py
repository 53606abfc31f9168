"""Controller configuration, label constants and config file discovery.

Searches for ``svclink.yaml`` in the current directory and parent
directories. Values are layered: built-in defaults, then the config file,
then ``SVCLINK_*`` environment variables. Command-line flags are applied
on top by the CLI.
"""

from __future__ import annotations

import dataclasses
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from svclink.errors import ConfigError

CONFIG_FILENAME = "svclink.yaml"
ENV_PREFIX = "SVCLINK_"

# Annotation set on Services that svclink created in the local cluster
SYNC_ANNOTATION = "cloudpilot.ai/svclink"
# Identifies which remote cluster a managed EndpointSlice mirrors
CLUSTER_LABEL = "cloudpilot.ai/svclink-cluster"
SERVICE_NAME_LABEL = "kubernetes.io/service-name"
MANAGED_BY_LABEL = "endpointslice.kubernetes.io/managed-by"
MANAGED_BY_VALUE = "svclink.cloudpilot.ai"
SLICE_NAME_SEPARATOR = "svclink"

SYSTEM_NAMESPACE = "kube-system"
RESERVED_SERVICE_NAME = "kubernetes"

CLUSTERLINK_GROUP = "svclink.cloudpilot.ai"
CLUSTERLINK_VERSION = "v1alpha1"
CLUSTERLINK_PLURAL = "clusterlinks"

DEFAULT_SYNC_INTERVAL = 30.0
DEFAULT_REQUEST_TIMEOUT = 10.0


@dataclass(frozen=True)
class SvclinkConfig:
    """Parsed svclink controller configuration."""

    config_path: Path | None = None
    sync_interval: float = DEFAULT_SYNC_INTERVAL
    included_namespaces: tuple[str, ...] = field(default_factory=tuple)
    sync_services_to_local_cluster: bool = False
    kubeconfig: str | None = None
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    max_workers: int = 1
    health_port: int | None = None
    log_level: str = "INFO"

    def validate(self) -> SvclinkConfig:
        """Check invariants, returning ``self`` so calls can be chained."""
        if SYSTEM_NAMESPACE in self.included_namespaces:
            msg = f"cannot include '{SYSTEM_NAMESPACE}' namespace; it is always excluded"
            raise ConfigError(msg)
        if self.sync_interval <= 0:
            raise ConfigError(f"sync_interval must be positive, got {self.sync_interval}")
        if self.request_timeout <= 0:
            raise ConfigError(f"request_timeout must be positive, got {self.request_timeout}")
        if self.max_workers < 1:
            raise ConfigError(f"max_workers must be at least 1, got {self.max_workers}")
        if not isinstance(logging.getLevelName(self.log_level.upper()), int):
            raise ConfigError(f"Unknown log level: {self.log_level}")
        return self

    def with_overrides(self, **overrides: Any) -> SvclinkConfig:
        """Return a copy with every non-None override applied."""
        values = {k: v for k, v in overrides.items() if v is not None}
        if "included_namespaces" in values:
            values["included_namespaces"] = _as_namespaces(values["included_namespaces"])
        return dataclasses.replace(self, **values)


def find_config(start: Path | None = None) -> Path | None:
    """Walk from *start* (default ``cwd()``) up to the filesystem root.

    Returns the first ``svclink.yaml`` found, or ``None``.
    """
    here = (start or Path.cwd()).resolve()
    for directory in (here, *here.parents):
        candidate = directory / CONFIG_FILENAME
        if candidate.is_file():
            return candidate
    return None


def load_config(
    path: str | Path | None = None,
    *,
    auto_discover: bool = True,
    environ: dict[str, str] | None = None,
) -> SvclinkConfig:
    """Load the svclink configuration.

    Resolution order for the file:

    1. Explicit *path* (error if it doesn't exist).
    2. Auto-discover by walking parent directories.
    3. No file: defaults only.

    ``SVCLINK_*`` environment variables override values from the file.
    """
    config = SvclinkConfig()

    config_path: Path | None = None
    if path is not None:
        config_path = Path(path).resolve()
        if not config_path.is_file():
            raise ConfigError(f"Config file not found: {config_path}")
    elif auto_discover:
        config_path = find_config()

    if config_path is not None:
        config = _parse_config(config_path, config)

    env = _from_env(os.environ if environ is None else environ)
    return dataclasses.replace(config, **env)


def _from_env(environ: Any) -> dict[str, Any]:
    """Collect the ``SVCLINK_*`` environment variables that are set."""
    kwargs: dict[str, Any] = {}
    for fld in dataclasses.fields(SvclinkConfig):
        if fld.name == "config_path":
            continue
        val = environ.get(f"{ENV_PREFIX}{fld.name.upper()}")
        if val is None:
            continue
        kwargs[fld.name] = _coerce(fld.name, val)
    return kwargs


def _parse_config(config_path: Path, base: SvclinkConfig) -> SvclinkConfig:
    """Read a YAML config file and overlay it on *base*."""
    try:
        data = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e

    if not isinstance(data, dict):
        msg = f"Expected a YAML mapping in {config_path}, got {type(data).__name__}"
        raise ConfigError(msg)

    known = {f.name for f in dataclasses.fields(SvclinkConfig)} - {"config_path"}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigError(f"Unknown keys in {config_path}: {', '.join(unknown)}")

    values = {key: _coerce(key, val) for key, val in data.items() if val is not None}
    kubeconfig = values.get("kubeconfig")
    if kubeconfig:
        values["kubeconfig"] = str((config_path.parent / Path(kubeconfig).expanduser()).resolve())

    return dataclasses.replace(base, config_path=config_path, **values)


def _coerce(name: str, value: Any) -> Any:
    try:
        if name in ("sync_interval", "request_timeout"):
            return float(value)
        if name in ("max_workers", "health_port"):
            return int(value)
        if name == "sync_services_to_local_cluster":
            if isinstance(value, bool):
                return value
            return str(value).lower() in ("1", "true", "yes")
        if name == "included_namespaces":
            return _as_namespaces(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid value for {name}: {value!r}") from e
    return value


def _as_namespaces(value: Any) -> tuple[str, ...]:
    if isinstance(value, str):
        items = value.split(",")
    else:
        items = list(value)
    return tuple(ns.strip() for ns in items if ns and ns.strip())
