"""Handlers that react to deployment changes seen by the operator."""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Mapping, Protocol

log = logging.getLogger(__name__)

DAPR_ENABLED_ANNOTATION_KEY = "dapr.io/enabled"
DAPR_ID_ANNOTATION_KEY = "dapr.io/id"
DAPR_SIDECAR_HTTP_PORT_NAME = "dapr-http"
DAPR_SIDECAR_GRPC_PORT_NAME = "dapr-grpc"
DAPR_SIDECAR_HTTP_PORT = 3500
DAPR_SIDECAR_GRPC_PORT = 50001

_TRUTHY = frozenset({"y", "yes", "true", "on", "1"})


class Handler(ABC):
    """Reacts to the lifecycle of watched cluster objects."""

    @abstractmethod
    def init(self) -> None:
        """Run startup tasks."""

    @abstractmethod
    def object_created(self, obj: Any) -> None:
        """Handle a newly seen object."""

    @abstractmethod
    def object_updated(self, old: Any, new: Any) -> None:
        """Handle a changed object."""

    @abstractmethod
    def object_deleted(self, obj: Any) -> None:
        """Handle a removed object."""


class _ServiceClient(Protocol):
    def service_exists(self, name: str, namespace: str) -> bool: ...
    def create_service(self, service: dict[str, Any], namespace: str) -> None: ...


def _metadata(obj: Mapping[str, Any] | None) -> Mapping[str, Any]:
    return (obj or {}).get("metadata") or {}


def _template_annotations(deployment: Mapping[str, Any]) -> Mapping[str, str]:
    spec = deployment.get("spec") or {}
    template = spec.get("template") or {}
    return _metadata(template).get("annotations") or {}


def _deployment_key(deployment: Mapping[str, Any]) -> tuple[str, str]:
    meta = _metadata(deployment)
    return meta.get("namespace", ""), meta.get("name", "")


class DaprHandler(Handler):
    """Creates a service in front of the sidecar of every enabled deployment.

    It also keeps track of the enabled deployments it has seen, keyed by
    (namespace, name), mapped to their app id.
    """

    def __init__(self, client: _ServiceClient) -> None:
        self.client = client
        self._lock = threading.Lock()
        self._tracked: dict[tuple[str, str], str] = {}

    @property
    def tracked(self) -> dict[tuple[str, str], str]:
        """A copy of the enabled deployments seen so far."""
        with self._lock:
            return dict(self._tracked)

    def init(self) -> None:
        """Check the client is usable and start with no tracked deployments."""
        for method in ("service_exists", "create_service"):
            if not callable(getattr(self.client, method, None)):
                raise TypeError(f"service client lacks {method}()")
        with self._lock:
            self._tracked.clear()

    @staticmethod
    def _dapr_id(deployment: Mapping[str, Any]) -> str:
        return _template_annotations(deployment).get(DAPR_ID_ANNOTATION_KEY) or ""

    @staticmethod
    def _is_annotated(deployment: Mapping[str, Any]) -> bool:
        value = _template_annotations(deployment).get(DAPR_ENABLED_ANNOTATION_KEY)
        return value is not None and value.lower() in _TRUTHY

    def _create_service(self, name: str, deployment: Mapping[str, Any]) -> None:
        service_name = f"{name}-dapr"
        namespace = _metadata(deployment).get("namespace", "")
        if self.client.service_exists(service_name, namespace):
            log.info("service exists: %s", service_name)
            return
        selector = ((deployment.get("spec") or {}).get("selector") or {}).get("matchLabels") or {}
        service = {
            "metadata": {
                "name": service_name,
                "labels": {DAPR_ENABLED_ANNOTATION_KEY: "true"},
            },
            "spec": {
                "selector": dict(selector),
                "ports": [
                    {
                        "protocol": "TCP",
                        "port": 80,
                        "targetPort": DAPR_SIDECAR_HTTP_PORT,
                        "name": DAPR_SIDECAR_HTTP_PORT_NAME,
                    },
                    {
                        "protocol": "TCP",
                        "port": DAPR_SIDECAR_GRPC_PORT,
                        "targetPort": DAPR_SIDECAR_GRPC_PORT,
                        "name": DAPR_SIDECAR_GRPC_PORT_NAME,
                    },
                ],
            },
        }
        self.client.create_service(service, namespace)
        log.info("created service %s in namespace %s", service_name, namespace)

    def object_created(self, obj: Any) -> None:
        """Create the sidecar service for an enabled deployment; failures are logged."""
        with self._lock:
            if not self._is_annotated(obj):
                return
            name = _metadata(obj).get("name", "")
            dapr_id = self._dapr_id(obj)
            if not dapr_id:
                log.error("skipping service creation: id for deployment %s is empty", name)
                return
            self._tracked[_deployment_key(obj)] = dapr_id
            try:
                self._create_service(dapr_id, obj)
            except Exception as exc:
                log.error("failed creating service for deployment %s: %s", name, exc)

    def object_updated(self, old: Any, new: Any) -> None:
        """Refresh the tracked app id of a deployment; no service is touched."""
        with self._lock:
            self._tracked.pop(_deployment_key(old), None)
            dapr_id = self._dapr_id(new)
            if self._is_annotated(new) and dapr_id:
                self._tracked[_deployment_key(new)] = dapr_id

    def object_deleted(self, obj: Any) -> None:
        """Forget a deleted deployment; its service is left in place."""
        with self._lock:
            self._tracked.pop(_deployment_key(obj), None)