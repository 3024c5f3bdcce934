"""Building JSON patch operations that add the sidecar container to pods."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Mapping

log = logging.getLogger(__name__)

SIDECAR_CONTAINER_NAME = "daprd"
DAPR_ENABLED_KEY = "dapr.io/enabled"
DAPR_PORT_KEY = "dapr.io/port"
DAPR_CONFIG_KEY = "dapr.io/config"
DAPR_PROTOCOL_KEY = "dapr.io/protocol"
DAPR_ID_KEY = "dapr.io/id"
DAPR_PROFILING_KEY = "dapr.io/profiling"
DAPR_LOG_LEVEL_KEY = "dapr.io/log-level"
DAPR_MAX_CONCURRENCY_KEY = "dapr.io/max-concurrency"
SIDECAR_HTTP_PORT = 3500
SIDECAR_GRPC_PORT = 50001
API_ADDRESS = "http://dapr-api"
PLACEMENT_SERVICE = "dapr-placement"
SIDECAR_HTTP_PORT_NAME = "dapr-http"
SIDECAR_GRPC_PORT_NAME = "dapr-grpc"
DEFAULT_LOG_LEVEL = "info"
KUBERNETES_MOUNT_PATH = "/var/run/secrets/kubernetes.io/serviceaccount"

_TRUTHY = frozenset({"y", "yes", "true", "on", "1"})
_INTEGER = re.compile(r"[+-]?[0-9]+")
_INT32_MIN = -(2**31)
_INT32_MAX = 2**31 - 1


@dataclass
class PatchOperation:
    """One JSON patch operation applied to a resource."""

    op: str
    path: str
    value: Any = None

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON form; a missing value is left out."""
        out: dict[str, Any] = {"op": self.op, "path": self.path}
        if self.value is not None:
            out["value"] = self.value
        return out


def _annotations(pod: Mapping[str, Any]) -> Mapping[str, str]:
    return ((pod or {}).get("metadata") or {}).get("annotations") or {}


def _containers(pod: Mapping[str, Any]) -> list:
    return ((pod or {}).get("spec") or {}).get("containers") or []


def _parse_int32(text: str, what: str) -> int:
    if not _INTEGER.fullmatch(text):
        raise ValueError(f"error parsing {what} int value {text}: invalid syntax")
    value = int(text)
    if not _INT32_MIN <= value <= _INT32_MAX:
        raise ValueError(f"error parsing {what} int value {text}: value out of range")
    return value


def _enabled(annotations: Mapping[str, str], key: str) -> bool:
    value = annotations.get(key)
    return value is not None and value.lower() in _TRUTHY


def get_token_volume_mount(pod: Mapping[str, Any]) -> dict[str, Any] | None:
    """Return the first service account token mount of any container, if any."""
    for container in _containers(pod):
        for mount in container.get("volumeMounts") or []:
            if mount.get("mountPath") == KUBERNETES_MOUNT_PATH:
                return dict(mount)
    return None


def pod_contains_sidecar_container(pod: Mapping[str, Any]) -> bool:
    """Tell whether the pod already has the sidecar container."""
    return any(c.get("name") == SIDECAR_CONTAINER_NAME for c in _containers(pod))


def get_max_concurrency(annotations: Mapping[str, str]) -> int:
    """Return the annotated max concurrency, or -1; raises ValueError if malformed."""
    value = annotations.get(DAPR_MAX_CONCURRENCY_KEY)
    if value is None:
        return -1
    return _parse_int32(value, "max concurrency")


def get_app_port(annotations: Mapping[str, str]) -> int:
    """Return the annotated application port, or -1; raises ValueError if malformed."""
    value = annotations.get(DAPR_PORT_KEY)
    if value is None:
        return -1
    return _parse_int32(value, "port")


def get_config(annotations: Mapping[str, str]) -> str:
    """Return the annotated configuration name, or an empty string."""
    return annotations.get(DAPR_CONFIG_KEY, "")


def get_protocol(annotations: Mapping[str, str]) -> str:
    """Return the annotated application protocol, "http" by default."""
    return annotations.get(DAPR_PROTOCOL_KEY) or "http"


def get_app_id(pod: Mapping[str, Any]) -> str:
    """Return the annotated application id, or else the pod name."""
    return _annotations(pod).get(DAPR_ID_KEY) or ((pod or {}).get("metadata") or {}).get("name", "")


def get_log_level(annotations: Mapping[str, str]) -> str:
    """Return the annotated log level, "info" by default."""
    return annotations.get(DAPR_LOG_LEVEL_KEY) or DEFAULT_LOG_LEVEL


def profiling_enabled(annotations: Mapping[str, str]) -> bool:
    """Tell whether profiling is switched on by annotation."""
    return _enabled(annotations, DAPR_PROFILING_KEY)


def is_resource_dapr_enabled(annotations: Mapping[str, str]) -> bool:
    """Tell whether the sidecar is switched on by annotation."""
    return _enabled(annotations, DAPR_ENABLED_KEY)


def get_kubernetes_dns(name: str, namespace: str) -> str:
    """Return the cluster DNS name of a service."""
    return f"{name}.{namespace}.svc.cluster.local"


def get_sidecar_container(
    application_port: str,
    application_protocol: str,
    app_id: str,
    config: str,
    image: str,
    namespace: str,
    control_plane_address: str,
    placement_service_address: str,
    enable_profiling: str,
    log_level: str,
    max_concurrency: str,
    token_volume_mount: Mapping[str, Any] | None,
) -> dict[str, Any]:
    """Return the sidecar container specification."""
    container: dict[str, Any] = {
        "name": SIDECAR_CONTAINER_NAME,
        "image": image,
        "command": ["/daprd"],
        "args": [
            "--mode", "kubernetes",
            "--dapr-http-port", str(SIDECAR_HTTP_PORT),
            "--dapr-grpc-port", str(SIDECAR_GRPC_PORT),
            "--app-port", application_port,
            "--dapr-id", app_id,
            "--control-plane-address", control_plane_address,
            "--protocol", application_protocol,
            "--placement-address", placement_service_address,
            "--config", config,
            "--enable-profiling", enable_profiling,
            "--log-level", log_level,
            "--max-concurrency", max_concurrency,
        ],
        "ports": [
            {"name": SIDECAR_HTTP_PORT_NAME, "containerPort": SIDECAR_HTTP_PORT},
            {"name": SIDECAR_GRPC_PORT_NAME, "containerPort": SIDECAR_GRPC_PORT},
        ],
        "env": [
            {"name": "HOST_IP", "valueFrom": {"fieldRef": {"fieldPath": "status.podIP"}}},
            {"name": "NAMESPACE", "value": namespace},
        ],
        "resources": {},
        "imagePullPolicy": "Always",
    }
    if token_volume_mount is not None:
        container["volumeMounts"] = [dict(token_volume_mount)]
    return container


def _pod_from(raw: Any) -> dict[str, Any]:
    if isinstance(raw, (str, bytes, bytearray)):
        raw = json.loads(raw)
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ValueError("could not unmarshal raw object: pod must be a JSON object")
    return raw


def get_pod_patch_operations(review: Mapping[str, Any], namespace: str, image: str) -> list[PatchOperation]:
    """Return the operations that add the sidecar to the reviewed pod.

    No operations are returned when the pod is not enabled or already has the
    sidecar. A malformed pod or port annotation raises ValueError.
    """
    request = review.get("request") or {}
    pod = _pod_from(request.get("object"))
    log.info(
        "AdmissionReview for Kind=%s, Namespace=%s Name=%s (%s) UID=%s patchOperation=%s UserInfo=%s",
        request.get("kind"),
        request.get("namespace"),
        request.get("name"),
        (pod.get("metadata") or {}).get("name"),
        request.get("uid"),
        request.get("operation"),
        request.get("userInfo"),
    )

    annotations = _annotations(pod)
    if not is_resource_dapr_enabled(annotations) or pod_contains_sidecar_container(pod):
        return []

    app_port = get_app_port(annotations)
    try:
        max_concurrency = get_max_concurrency(annotations)
    except ValueError as exc:
        log.warning("%s", exc)
        max_concurrency = -1

    sidecar = get_sidecar_container(
        str(app_port) if app_port > 0 else "",
        get_protocol(annotations),
        get_app_id(pod),
        get_config(annotations),
        image,
        request.get("namespace", ""),
        get_kubernetes_dns(API_ADDRESS, namespace),
        f"{get_kubernetes_dns(PLACEMENT_SERVICE, namespace)}:80",
        "true" if profiling_enabled(annotations) else "false",
        get_log_level(annotations),
        str(max_concurrency),
        get_token_volume_mount(pod),
    )

    if _containers(pod):
        return [PatchOperation(op="add", path="/spec/containers/-", value=sidecar)]
    return [PatchOperation(op="add", path="/spec/containers", value=[sidecar])]