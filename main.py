from __future__ import annotations

import re
import secrets

from fastapi import Depends, FastAPI, HTTPException, Query, status
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from csr import db
from csr.api_models import ApplyRequest
from csr.dispatcher import ControllerConfig, Dispatcher, Registry, ResyncLoop, UnknownKind
from csr.gateway import GatewayError, build_gateway
from csr.reconciler import CRD_NAME, FINALIZER_NAME, CustomServiceReconciler, FinalizerMissing
from csr.settings import settings

KIND = "CustomService"
NAME_RE = re.compile(r"^[a-z0-9]([a-z0-9\-]{0,61}[a-z0-9])?$")

app = FastAPI(title="Custom Service Reconciler")
security = HTTPBasic(auto_error=False)

reconciler = CustomServiceReconciler(build_gateway(settings.gateway_backend), update_status=settings.update_status)
registry = Registry()
registry.register(KIND, reconciler, ControllerConfig(crd_name=CRD_NAME, finalizer=FINALIZER_NAME))
dispatcher = Dispatcher(registry)
resync = ResyncLoop(dispatcher, KIND)


def require_user(credentials: HTTPBasicCredentials | None = Depends(security)) -> str:
    # Auth is only enforced once a password is configured.
    if settings.api_password is None:
        return "anonymous"
    if credentials is None or not (
        secrets.compare_digest(credentials.username, settings.api_user)
        and secrets.compare_digest(credentials.password, settings.api_password)
    ):
        raise HTTPException(status_code=401, detail="Invalid credentials", headers={"WWW-Authenticate": "Basic"})
    return credentials.username


def _validate_identity(namespace: str, name: str) -> None:
    for label, v in (("namespace", namespace), ("name", name)):
        if not NAME_RE.match(v):
            raise HTTPException(status_code=400, detail=f"Invalid {label} '{v}'.")


def _dispatch(resource):
    try:
        return dispatcher.dispatch(KIND, resource)
    except FinalizerMissing as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except GatewayError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    except UnknownKind as e:
        raise HTTPException(status_code=404, detail=f"No reconciler for kind {e}")


@app.on_event("startup")
def startup() -> None:
    db.init_db()
    db.log_event("INFO", f"API started (gateway={settings.gateway_backend}, update_status={settings.update_status})")
    if settings.enable_resync:
        resync.start()


@app.on_event("shutdown")
def shutdown() -> None:
    resync.stop(timeout_s=5)


@app.get("/health")
def health():
    return {"status": "healthy", "kinds": registry.kinds()}


@app.get("/resources")
def list_resources(_: str = Depends(require_user)):
    return [r.to_dict() for r in db.list_resources(KIND)]


@app.get("/resources/{namespace}/{name}")
def get_resource(namespace: str, name: str, _: str = Depends(require_user)):
    r = db.get_resource(KIND, namespace, name)
    if r is None:
        raise HTTPException(status_code=404, detail="Resource not found")
    return r.to_dict()


@app.put("/resources/{namespace}/{name}")
def apply_resource(namespace: str, name: str, req: ApplyRequest, _: str = Depends(require_user)):
    _validate_identity(namespace, name)
    try:
        stored = db.apply_spec(KIND, namespace, name, req.to_spec())
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e))
    result = _dispatch(stored)
    return {"action": result.action, "resource": result.resource.to_dict()}


@app.delete("/resources/{namespace}/{name}")
def delete_resource(namespace: str, name: str, _: str = Depends(require_user)):
    marked = db.mark_for_deletion(KIND, namespace, name)
    if marked is None:
        raise HTTPException(status_code=404, detail="Resource not found")
    result = _dispatch(marked)
    return {"action": result.action, "resource": result.resource.to_dict()}


@app.get("/children")
def list_children(namespace: str | None = None, _: str = Depends(require_user)):
    if settings.gateway_backend != "sqlite":
        raise HTTPException(status_code=501, detail="Listing is only available with the sqlite backend")
    return [c.to_dict() for c in db.list_children(namespace)]


@app.get("/children/{namespace}/{name}")
def get_child(namespace: str, name: str, _: str = Depends(require_user)):
    child = reconciler.gateway.get(namespace, name)
    if child is None:
        raise HTTPException(status_code=404, detail="Child resource not found")
    return child.to_dict()


@app.get("/events")
def events(limit: int = Query(100, ge=1, le=1000), _: str = Depends(require_user)):
    return db.latest_events(limit)


@app.get("/stats")
def stats(_: str = Depends(require_user)):
    return {"executions": reconciler.executions, "update_status": reconciler.update_status}
