import asyncio
import json
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import (
    FastAPI,
    Header,
    HTTPException,
    Query,
    WebSocket,
    WebSocketDisconnect,
    Request,
)
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from config.settings import DEFAULT_PRINCIPAL, METRICS_ENABLED, WS_STATUS_INTERVAL
from core.admission import AdmissionController
from core.backend import create_backend
from core.errors import NotFoundError, VMManagerError
from core.host_info import PsutilHostInfoProvider
from core.metrics import (
    REQUEST_COUNT,
    REQUEST_LATENCY,
    record_vm_created,
    record_vm_deleted,
    record_vm_activity,
    record_status_counts,
    sample_host_stats,
    init_static_metrics,
    start_background_collectors,
)
from core.logger import log_event
from core.quota import QuotaLedger
from core.vm_manager import VMManager
from schemas.quota_schema import QuotaLimits
from schemas.vm_schema import VMCreateSchema, VMRecord, VMUpdateSchema


def build_manager() -> VMManager:
    quota = QuotaLedger()
    admission = AdmissionController(PsutilHostInfoProvider(), quota)
    return VMManager(create_backend(), admission, quota)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if METRICS_ENABLED:
        init_static_metrics(vm_manager.backend.name)
        start_background_collectors()
        log_event("[app] Metrics enabled and collectors started")
    yield
    vm_manager.close()
    log_event("[app] VM manager shut down")


app = FastAPI(
    title="Virtual Manager API",
    description=(
        "Admission control and lifecycle management for virtual machines.\n\n"
        "Features:\n"
        "- Staged admission: shape, host capability, accelerator profile, quota, scheduling\n"
        "- Per-principal quota accounting\n"
        "- Simulated or libvirt-backed VMs (QEMU/KVM, Xen, ...)\n"
        "- Prometheus/Grafana metrics\n"
        "- WebSocket status and host statistics streams"
    ),
    version="3.0.0",
    lifespan=lifespan,
)

vm_manager = build_manager()


def resolve_principal(x_user_id: Optional[str], owner: Optional[str] = None) -> str:
    return x_user_id or owner or DEFAULT_PRINCIPAL


def _vm_body(record: VMRecord) -> dict:
    return record.model_dump(mode="json")


@app.exception_handler(VMManagerError)
async def vm_manager_error_handler(request: Request, exc: VMManagerError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    endpoint = request.url.path
    method = request.method

    if not METRICS_ENABLED or endpoint == "/metrics":
        return await call_next(request)

    start_time = time.time()
    try:
        response = await call_next(request)
        return response
    finally:
        duration = time.time() - start_time
        REQUEST_COUNT.labels(method=method, endpoint=endpoint).inc()
        REQUEST_LATENCY.labels(endpoint=endpoint).observe(duration)


# -----------------------------
# System
# -----------------------------
@app.get("/", tags=["System"])
def root():
    return {
        "message": "Virtual Manager API is running",
        "version": app.version,
        "backend": vm_manager.backend.name,
    }


@app.get("/health", tags=["System"])
def health():
    return {"status": "ok"}


@app.get("/system/cpuinfo", tags=["System"])
def cpu_info():
    return vm_manager.admission.query_host().to_dict()


@app.get("/accelerators/profiles", tags=["System"])
def accelerator_profiles():
    return {"profiles": vm_manager.admission.accelerator_profiles}


# -----------------------------
# Admission
# -----------------------------
@app.post("/admission/check", tags=["Admission"])
def admission_check(payload: VMCreateSchema, x_user_id: Optional[str] = Header(None)):
    principal = resolve_principal(x_user_id, payload.owner)
    decision = vm_manager.admit(payload.to_spec(), payload.scheduling, principal)
    return decision.to_dict()


# -----------------------------
# VM management
# -----------------------------
@app.post("/vms", tags=["VM Management"])
def create_vm(
    payload: VMCreateSchema,
    x_user_id: Optional[str] = Header(None),
    timeout: Optional[float] = Query(None, gt=0),
):
    principal = resolve_principal(x_user_id, payload.owner)
    record = vm_manager.create_vm(payload.to_spec(), payload.scheduling, principal, timeout=timeout)
    record_vm_created(record.owner)
    return JSONResponse(status_code=201, content={"status": "created", "vm": _vm_body(record)})


@app.get("/vms", tags=["VM Management"])
def list_vms():
    return {"vms": [_vm_body(record) for record in vm_manager.list_vms()]}


@app.get("/vms/{vm_id}", tags=["VM Management"])
def get_vm(vm_id: str):
    return _vm_body(vm_manager.get_vm(vm_id))


@app.put("/vms/{vm_id}", tags=["VM Management"])
def update_vm(vm_id: str, payload: VMUpdateSchema, timeout: Optional[float] = Query(None, gt=0)):
    record = vm_manager.update_vm(vm_id, payload, timeout=timeout)
    record_vm_activity(record.owner)
    return {"status": "updated", "vm": _vm_body(record)}


@app.delete("/vms/{vm_id}", tags=["VM Management"])
def delete_vm(vm_id: str, timeout: Optional[float] = Query(None, gt=0)):
    record = vm_manager.delete_vm(vm_id, timeout=timeout)
    record_vm_deleted(record.owner)
    return {"status": "deleted", "vm_id": vm_id}


@app.get("/vms/{vm_id}/describe", tags=["VM Management"])
def describe_vm(vm_id: str, timeout: Optional[float] = Query(None, gt=0)):
    return vm_manager.describe_vm(vm_id, timeout=timeout).model_dump(mode="json")


_TRANSITIONS = {
    "start": ("started", lambda vm_id, timeout: vm_manager.start_vm(vm_id, timeout=timeout)),
    "stop": ("stopped", lambda vm_id, timeout: vm_manager.stop_vm(vm_id, timeout=timeout)),
    "restart": ("restarted", lambda vm_id, timeout: vm_manager.restart_vm(vm_id, timeout=timeout)),
    "pause": ("paused", lambda vm_id, timeout: vm_manager.pause_vm(vm_id, timeout=timeout)),
    "resume": ("resumed", lambda vm_id, timeout: vm_manager.resume_vm(vm_id, timeout=timeout)),
    "refresh": ("refreshed", lambda vm_id, timeout: vm_manager.refresh_vm(vm_id, timeout=timeout)),
}


@app.post("/vms/{vm_id}/{action}", tags=["VM Management"])
def vm_transition(vm_id: str, action: str, timeout: Optional[float] = Query(None, gt=0)):
    if action not in _TRANSITIONS:
        raise HTTPException(status_code=404, detail=f"Unknown VM action '{action}'")
    label, run = _TRANSITIONS[action]
    record = run(vm_id, timeout)
    record_vm_activity(record.owner)
    return {"status": label, "vm": _vm_body(record)}


# -----------------------------
# Quota
# -----------------------------
@app.get("/quota/{principal}", tags=["Quota"])
def get_quota(principal: str):
    return {
        "quota": vm_manager.quota.get_quota(principal).model_dump(),
        "usage": vm_manager.get_usage(principal).model_dump(),
    }


@app.put("/quota/{principal}", tags=["Quota"])
def set_quota(principal: str, payload: QuotaLimits):
    entry = vm_manager.quota.set_quota(principal, payload)
    return {"status": "ok", "quota": entry.model_dump()}


# -----------------------------
# Monitoring
# -----------------------------
@app.get("/metrics", tags=["Monitoring"])
def metrics():
    if not METRICS_ENABLED:
        raise HTTPException(status_code=404, detail="Metrics disabled")
    record_status_counts(vm_manager.list_vms())
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.websocket("/ws/vm/{vm_id}/status")
async def vm_status_stream(websocket: WebSocket, vm_id: str):
    await websocket.accept()
    log_event(f"[ws-status] Client connected for VM {vm_id}")
    try:
        while True:
            record = vm_manager.get_vm(vm_id)
            await websocket.send_text(
                json.dumps(
                    {
                        "id": record.id,
                        "name": record.spec.name,
                        "status": record.status.value,
                        "last_error": record.last_error,
                        "updated_at": record.updated_at.isoformat(),
                    }
                )
            )
            await asyncio.sleep(WS_STATUS_INTERVAL)
    except WebSocketDisconnect:
        log_event(f"[ws-status] Client disconnected for VM {vm_id}")
    except NotFoundError as e:
        log_event(f"[ws-status] {e.message}")
        await websocket.send_text(json.dumps(e.to_dict()))
        await websocket.close()


@app.websocket("/ws/stats")
async def host_stats_stream(websocket: WebSocket):
    await websocket.accept()
    log_event("[ws-stats] Client connected")
    try:
        while True:
            stats = sample_host_stats()
            stats["vms"] = len(vm_manager.list_vms())
            await websocket.send_text(json.dumps(stats))
            await asyncio.sleep(WS_STATUS_INTERVAL)
    except WebSocketDisconnect:
        log_event("[ws-stats] Client disconnected")
