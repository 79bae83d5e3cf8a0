from __future__ import annotations

from threading import Lock

from . import db
from .control import UpdateControl, UpdateResource
from .gateway import ChildResourceGateway
from .models import ChildResource, CustomResource, CustomServiceStatus, ObjectMeta

CRD_NAME = "customservices.sample.csr"
FINALIZER_NAME = f"{CRD_NAME}/finalizer"
MANAGED_BY_LABEL = "managed-by"
READY_MESSAGE = "ConfigMap Ready"


class FinalizerMissing(RuntimeError):
    """Upsert was invoked before the finalizer was registered on the resource."""


class CustomServiceReconciler:
    """Converges one child key/value resource per CustomService.

    Stateless per resource: callers serialize invocations for the same
    namespace/name, different identities may run in parallel.
    """

    def __init__(self, gateway: ChildResourceGateway, update_status: bool = True):
        self.gateway = gateway
        self.update_status = update_status
        self._lock = Lock()
        self._executions = 0

    @property
    def executions(self) -> int:
        with self._lock:
            return self._executions

    def _count_execution(self) -> None:
        with self._lock:
            self._executions += 1

    def reconcile_delete(self, resource: CustomResource) -> bool:
        """Remove the child. Always reports completion; a missing child is success."""
        ns, name = resource.identity
        child_name = resource.spec.child_name
        if self.gateway.delete(ns, child_name):
            db.log_event("INFO", f"Deleted child {child_name} for resource {name}", namespace=ns, name=name)
        else:
            db.log_event("WARN", f"Child {child_name} for resource {name} already absent", namespace=ns, name=name)
        return True

    def reconcile_upsert(self, resource: CustomResource) -> UpdateControl:
        self._count_execution()
        if not resource.metadata.has_finalizer(FINALIZER_NAME):
            raise FinalizerMissing(f"Finalizer {FINALIZER_NAME} is not present on {'/'.join(resource.identity)}.")

        ns = resource.metadata.namespace
        desired = resource.spec.desired_data()
        existing = self.gateway.get(ns, resource.spec.child_name)

        if existing is not None:
            # Full replace: keys not in the desired map are dropped.
            existing.data = desired
            self.gateway.create_or_replace(existing)
        else:
            self.gateway.create_or_replace(
                ChildResource(
                    metadata=ObjectMeta(
                        name=resource.spec.child_name,
                        namespace=ns,
                        labels={MANAGED_BY_LABEL: type(self).__name__},
                    ),
                    data=desired,
                )
            )

        if self.update_status:
            if resource.status is None:
                resource.status = CustomServiceStatus()
            resource.status.child_status = READY_MESSAGE
        return UpdateResource(resource)
