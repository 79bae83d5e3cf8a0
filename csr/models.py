from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any


@dataclass
class ObjectMeta:
    name: str
    namespace: str = "default"
    finalizers: list[str] = field(default_factory=list)
    deletion_timestamp: str | None = None
    generation: int = 1
    labels: dict[str, str] = field(default_factory=dict)
    resource_version: str | None = None

    @property
    def marked_for_deletion(self) -> bool:
        return self.deletion_timestamp is not None

    def has_finalizer(self, finalizer: str) -> bool:
        return finalizer in self.finalizers

    def add_finalizer(self, finalizer: str) -> bool:
        """Add a finalizer once. Returns True if the list changed."""
        if finalizer in self.finalizers:
            return False
        self.finalizers.append(finalizer)
        return True

    def remove_finalizer(self, finalizer: str) -> bool:
        """Drop every copy of a finalizer. Returns True if the list changed."""
        if finalizer not in self.finalizers:
            return False
        self.finalizers = [f for f in self.finalizers if f != finalizer]
        return True

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"name": self.name, "namespace": self.namespace}
        if self.finalizers:
            out["finalizers"] = list(self.finalizers)
        if self.deletion_timestamp is not None:
            out["deletionTimestamp"] = self.deletion_timestamp
        if self.labels:
            out["labels"] = dict(self.labels)
        if self.resource_version is not None:
            out["resourceVersion"] = self.resource_version
        out["generation"] = self.generation
        return out

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "ObjectMeta":
        if not raw.get("name"):
            raise ValueError("metadata.name is required.")
        return cls(
            name=raw["name"],
            namespace=raw.get("namespace") or "default",
            finalizers=list(raw.get("finalizers") or []),
            deletion_timestamp=raw.get("deletionTimestamp"),
            generation=int(raw.get("generation") or 1),
            labels=dict(raw.get("labels") or {}),
            resource_version=raw.get("resourceVersion"),
        )


@dataclass
class CustomServiceSpec:
    child_name: str
    key: str
    value: str

    def desired_data(self) -> dict[str, str]:
        return {self.key: self.value}


@dataclass
class CustomServiceStatus:
    child_status: str | None = None


@dataclass
class CustomResource:
    """Desired state: what child resource should exist and what it must hold."""

    metadata: ObjectMeta
    spec: CustomServiceSpec
    status: CustomServiceStatus | None = None

    @property
    def identity(self) -> tuple[str, str]:
        return self.metadata.namespace, self.metadata.name

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "metadata": self.metadata.to_dict(),
            "spec": {"childName": self.spec.child_name, "key": self.spec.key, "value": self.spec.value},
        }
        if self.status is not None:
            out["status"] = {"childStatus": self.status.child_status}
        return out

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "CustomResource":
        spec = raw.get("spec") or {}
        missing = [k for k in ("childName", "key", "value") if spec.get(k) is None]
        if missing:
            raise ValueError(f"spec is missing required fields: {', '.join(missing)}")
        status_raw = raw.get("status")
        return cls(
            metadata=ObjectMeta.from_dict(raw.get("metadata") or {}),
            spec=CustomServiceSpec(child_name=spec["childName"], key=spec["key"], value=spec["value"]),
            status=CustomServiceStatus(child_status=status_raw.get("childStatus")) if status_raw else None,
        )

    def clone(self) -> "CustomResource":
        return copy.deepcopy(self)


@dataclass
class ChildResource:
    """Managed key/value object (a ConfigMap on Kubernetes)."""

    metadata: ObjectMeta
    data: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        meta = self.metadata.to_dict()
        meta.pop("generation", None)
        return {"metadata": meta, "data": dict(self.data)}

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "ChildResource":
        return cls(metadata=ObjectMeta.from_dict(raw.get("metadata") or {}), data=dict(raw.get("data") or {}))
