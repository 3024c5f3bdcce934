"""Runtime modes, protocols, defaults and the sidecar runtime configuration."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TypeVar


class DaprMode(str, Enum):
    """Environment the sidecar runtime runs in."""

    KUBERNETES = "kubernetes"
    STANDALONE = "standalone"


class Protocol(str, Enum):
    """Protocol used to talk to the application."""

    GRPC = "grpc"
    HTTP = "http"


DEFAULT_DAPR_HTTP_PORT = 3500
DEFAULT_DAPR_GRPC_PORT = 50001
DEFAULT_PROFILE_PORT = 7777
DEFAULT_COMPONENTS_PATH = "./components"
DEFAULT_ALLOWED_ORIGINS = "*"

_VERSION = "edge"
_COMMIT = ""

_E = TypeVar("_E", bound=Enum)


def _coerce(enum_cls: type[_E], value: str) -> _E | str:
    """Return the enum member for ``value``, or ``value`` itself if unknown."""
    try:
        return enum_cls(value)
    except ValueError:
        return value


@dataclass
class StandaloneConfig:
    """Settings used when running outside a cluster."""

    components_path: str = DEFAULT_COMPONENTS_PATH


@dataclass
class KubernetesConfig:
    """Settings used when running inside a cluster."""

    control_plane_address: str = ""


@dataclass
class RuntimeConfig:
    """Configuration of a sidecar runtime instance."""

    app_id: str
    http_port: int = DEFAULT_DAPR_HTTP_PORT
    profile_port: int = DEFAULT_PROFILE_PORT
    enable_profiling: bool = False
    grpc_port: int = DEFAULT_DAPR_GRPC_PORT
    application_port: int = 0
    application_protocol: Protocol | str = Protocol.HTTP
    mode: DaprMode | str = DaprMode.STANDALONE
    placement_service_address: str = ""
    global_config: str = ""
    allowed_origins: str = DEFAULT_ALLOWED_ORIGINS
    standalone: StandaloneConfig = field(default_factory=StandaloneConfig)
    kubernetes: KubernetesConfig = field(default_factory=KubernetesConfig)
    max_concurrency: int = -1


def new_runtime_config(
    app_id,
    placement_service_address,
    control_plane_address,
    allowed_origins,
    global_config,
    components_path,
    app_protocol,
    mode,
    http_port,
    grpc_port,
    app_port,
    profile_port,
    enable_profiling,
    max_concurrency,
) -> RuntimeConfig:
    """Build a runtime configuration from flat values."""
    return RuntimeConfig(
        app_id=app_id,
        http_port=http_port,
        grpc_port=grpc_port,
        application_port=app_port,
        profile_port=profile_port,
        application_protocol=_coerce(Protocol, app_protocol),
        mode=_coerce(DaprMode, mode),
        placement_service_address=placement_service_address,
        global_config=global_config,
        allowed_origins=allowed_origins,
        standalone=StandaloneConfig(components_path=components_path),
        kubernetes=KubernetesConfig(control_plane_address=control_plane_address),
        enable_profiling=enable_profiling,
        max_concurrency=max_concurrency,
    )


def version() -> str:
    """Return the release version, or "edge" for unreleased builds."""
    return _VERSION


def commit() -> str:
    """Return the commit the package was built from, if known."""
    return _COMMIT