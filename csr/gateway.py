from __future__ import annotations

from typing import Protocol

from kubernetes import client, config
from kubernetes.client.rest import ApiException

from . import db
from .models import ChildResource, ObjectMeta


class GatewayError(Exception):
    """Backend failure talking to the child resource store (timeout, conflict, unavailable)."""


class ChildResourceGateway(Protocol):
    def get(self, namespace: str, name: str) -> ChildResource | None: ...

    def create_or_replace(self, child: ChildResource) -> ChildResource: ...

    def delete(self, namespace: str, name: str) -> bool: ...


class SqliteChildGateway:
    """Children kept in the local sqlite database.

    Every write supersedes the previous version and bumps resource_version.
    """

    def get(self, namespace: str, name: str) -> ChildResource | None:
        return db.get_child(namespace, name)

    def create_or_replace(self, child: ChildResource) -> ChildResource:
        return db.put_child(child)

    def delete(self, namespace: str, name: str) -> bool:
        return db.delete_child(namespace, name)


class KubernetesChildGateway:
    """Children as ConfigMaps on a Kubernetes cluster."""

    def __init__(self, api: client.CoreV1Api | None = None):
        self._api = api

    @property
    def api(self) -> client.CoreV1Api:
        if self._api is None:
            try:
                config.load_incluster_config()
            except config.ConfigException:
                config.load_kube_config()
            self._api = client.CoreV1Api()
        return self._api

    def get(self, namespace: str, name: str) -> ChildResource | None:
        try:
            cm = self.api.read_namespaced_config_map(name=name, namespace=namespace)
        except ApiException as e:
            if e.status == 404:
                return None
            raise GatewayError(f"read configmap {namespace}/{name} failed: HTTP {e.status} {e.reason}") from e
        return _from_config_map(cm)

    def create_or_replace(self, child: ChildResource) -> ChildResource:
        ns, name = child.metadata.namespace, child.metadata.name
        try:
            cm = self.api.create_namespaced_config_map(namespace=ns, body=_to_config_map(child))
        except ApiException as e:
            if e.status != 409:
                raise GatewayError(f"create configmap {ns}/{name} failed: HTTP {e.status} {e.reason}") from e
            # No resourceVersion is sent, so the replace is unconditional.
            try:
                cm = self.api.replace_namespaced_config_map(name=name, namespace=ns, body=_to_config_map(child))
            except ApiException as e2:
                raise GatewayError(f"replace configmap {ns}/{name} failed: HTTP {e2.status} {e2.reason}") from e2
        return _from_config_map(cm)

    def delete(self, namespace: str, name: str) -> bool:
        try:
            self.api.delete_namespaced_config_map(name=name, namespace=namespace)
            return True
        except ApiException as e:
            if e.status == 404:
                return False
            raise GatewayError(f"delete configmap {namespace}/{name} failed: HTTP {e.status} {e.reason}") from e


def _to_config_map(child: ChildResource) -> client.V1ConfigMap:
    meta = child.metadata
    return client.V1ConfigMap(
        metadata=client.V1ObjectMeta(name=meta.name, namespace=meta.namespace, labels=dict(meta.labels) or None),
        data=dict(child.data),
    )


def _from_config_map(cm: client.V1ConfigMap) -> ChildResource:
    meta = cm.metadata
    return ChildResource(
        metadata=ObjectMeta(
            name=meta.name,
            namespace=meta.namespace,
            labels=dict(meta.labels or {}),
            resource_version=meta.resource_version,
        ),
        data=dict(cm.data or {}),
    )


def build_gateway(backend: str) -> ChildResourceGateway:
    if backend == "sqlite":
        return SqliteChildGateway()
    if backend == "kubernetes":
        return KubernetesChildGateway()
    raise ValueError(f"Unknown gateway backend '{backend}'. Use sqlite|kubernetes.")
