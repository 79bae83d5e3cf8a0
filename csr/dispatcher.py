from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from threading import Event, Lock, Thread
from typing import Iterator, Literal, Protocol

from . import db
from .control import UpdateControl
from .models import CustomResource
from .settings import settings


class Reconciler(Protocol):
    def reconcile_upsert(self, resource: CustomResource) -> UpdateControl: ...

    def reconcile_delete(self, resource: CustomResource) -> bool: ...


class UnknownKind(KeyError):
    pass


@dataclass(frozen=True)
class ControllerConfig:
    crd_name: str
    finalizer: str
    generation_aware: bool = False


@dataclass(frozen=True)
class Registration:
    kind: str
    reconciler: Reconciler
    config: ControllerConfig


DispatchAction = Literal["upserted", "deleted", "purged", "skipped", "gone"]


@dataclass(frozen=True)
class DispatchResult:
    action: DispatchAction
    resource: CustomResource


class Registry:
    """Resource kind -> reconciler + config, filled once at startup."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._entries: dict[str, Registration] = {}

    def register(self, kind: str, reconciler: Reconciler, config: ControllerConfig) -> Registration:
        with self._lock:
            if kind in self._entries:
                raise ValueError(f"A reconciler is already registered for kind '{kind}'.")
            reg = Registration(kind=kind, reconciler=reconciler, config=config)
            self._entries[kind] = reg
            return reg

    def get(self, kind: str) -> Registration:
        with self._lock:
            reg = self._entries.get(kind)
        if reg is None:
            raise UnknownKind(kind)
        return reg

    def kinds(self) -> list[str]:
        with self._lock:
            return sorted(self._entries)


class Dispatcher:
    """Calls the registered reconciler for a resource and persists the outcome.

    Owns finalizer injection before the first upsert and finalizer removal
    after a completed delete. Invocations for the same identity are
    serialized; distinct identities run in parallel.
    """

    def __init__(self, registry: Registry):
        self.registry = registry
        self._lock = Lock()
        # identity -> (lock, number of callers holding or waiting on it)
        self._identity_locks: dict[tuple[str, str, str], tuple[Lock, int]] = {}
        self._observed_generation: dict[tuple[str, str, str], int] = {}

    @contextmanager
    def _hold_identity(self, key: tuple[str, str, str]) -> Iterator[None]:
        with self._lock:
            lock, users = self._identity_locks.get(key, (Lock(), 0))
            self._identity_locks[key] = (lock, users + 1)
        try:
            with lock:
                yield
        finally:
            with self._lock:
                lock, users = self._identity_locks[key]
                if users <= 1:
                    del self._identity_locks[key]
                else:
                    self._identity_locks[key] = (lock, users - 1)

    def dispatch(self, kind: str, resource: CustomResource) -> DispatchResult:
        """Reconcile the stored state of `resource`'s identity.

        The argument only names the identity. The current copy is re-read
        from the store under the identity lock, so a stale snapshot can
        neither resurrect a purged resource nor roll back a newer spec.
        """
        reg = self.registry.get(kind)
        ns, name = resource.identity
        key = (kind, ns, name)
        with self._hold_identity(key):
            current = db.get_resource(kind, ns, name)
            if current is None:
                return DispatchResult("gone", resource.clone())
            try:
                return self._dispatch(reg, key, current)
            except Exception as e:
                db.log_event("ERROR", f"Reconcile failed: {type(e).__name__}: {e}", namespace=ns, name=name)
                raise

    def _dispatch(self, reg: Registration, key: tuple[str, str, str], resource: CustomResource) -> DispatchResult:
        kind = reg.kind
        meta = resource.metadata
        finalizer = reg.config.finalizer

        if meta.marked_for_deletion:
            cleaned = False
            if meta.has_finalizer(finalizer) and reg.reconciler.reconcile_delete(resource):
                cleaned = meta.remove_finalizer(finalizer)
                with self._lock:
                    self._observed_generation.pop(key, None)
            if meta.finalizers:
                # Another controller still holds the resource.
                if cleaned:
                    db.save_resource(kind, resource)
                return DispatchResult("deleted" if cleaned else "skipped", resource)
            db.delete_resource(kind, meta.namespace, meta.name)
            db.log_event("INFO", "Resource removed from store", namespace=meta.namespace, name=meta.name)
            return DispatchResult("purged", resource)

        if meta.add_finalizer(finalizer):
            db.save_resource(kind, resource)
            db.log_event("INFO", f"Added finalizer {finalizer}", namespace=meta.namespace, name=meta.name)

        if reg.config.generation_aware:
            with self._lock:
                seen = self._observed_generation.get(key)
            if seen is not None and seen >= meta.generation:
                return DispatchResult("skipped", resource)

        control = reg.reconciler.reconcile_upsert(resource)
        if control.persist_needed:
            db.save_resource(kind, control.resource)
            resource = control.resource
        with self._lock:
            self._observed_generation[key] = meta.generation
        return DispatchResult("upserted", resource)


class ResyncLoop:
    """Re-dispatches every stored resource of one kind on a fixed interval."""

    def __init__(self, dispatcher: Dispatcher, kind: str, interval_s: float | None = None):
        self.dispatcher = dispatcher
        self.kind = kind
        self.interval_s = max(1, settings.poll_interval_s) if interval_s is None else interval_s
        self._stop = Event()
        self._thr: Thread | None = None

    def start(self) -> None:
        if self._thr and self._thr.is_alive():
            return
        self._stop.clear()
        self._thr = Thread(target=self._loop, daemon=True)
        self._thr.start()

    def stop(self, timeout_s: float | None = None) -> None:
        self._stop.set()
        if self._thr is not None:
            self._thr.join(timeout_s)

    def is_running(self) -> bool:
        return self._thr is not None and self._thr.is_alive()

    def _loop(self) -> None:
        db.log_event("INFO", f"Resync loop started for {self.kind}")
        while not self._stop.is_set():
            try:
                self.tick()
            except Exception as e:
                db.log_event("ERROR", f"Resync tick failed: {type(e).__name__}: {e}")
            self._stop.wait(self.interval_s)

    def tick(self) -> int:
        """Dispatch each stored resource once. Returns how many failed.

        Resources are listed up front; dispatch re-reads each one under its
        identity lock, so changes made meanwhile are not overwritten.
        """
        failed = 0
        for resource in db.list_resources(self.kind):
            try:
                self.dispatcher.dispatch(self.kind, resource)
            except Exception:
                # Already logged by dispatch; retried on the next tick.
                failed += 1
        return failed
