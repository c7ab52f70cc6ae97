import logging
import threading
import time
from typing import Iterable, Optional

import psutil
from prometheus_client import Counter, Gauge, Histogram

from config.settings import METRICS_REFRESH_INTERVAL
from core.logger import log_event
from schemas.vm_schema import VMRecord, VMStatus

# -----------------------------
# HTTP / API level metrics
# -----------------------------
REQUEST_COUNT = Counter(
    "vm_manager_requests_total",
    "Total HTTP requests to vm-manager",
    ["method", "endpoint"],
)

REQUEST_LATENCY = Histogram(
    "vm_manager_request_latency_seconds",
    "Latency of HTTP requests to vm-manager",
    ["endpoint"],
)

# -----------------------------
# VM / user metrics
# -----------------------------
VM_CREATED_TOTAL = Counter(
    "vm_created_total",
    "Total number of VMs created",
    ["owner"],
)

VM_PER_USER = Gauge(
    "vm_per_user",
    "Number of VMs currently existing per user",
    ["owner"],
)

VM_LAST_ACTIVITY = Gauge(
    "vm_last_activity_timestamp",
    "UNIX timestamp of the last VM operation for a given user",
    ["owner"],
)

VM_BY_STATUS = Gauge(
    "vm_status_total",
    "Number of VMs per lifecycle status",
    ["status"],
)

# -----------------------------
# Admission / backend metrics
# -----------------------------
ADMISSION_REJECTED_TOTAL = Counter(
    "vm_admission_rejected_total",
    "Admission rejections by reason code",
    ["reason"],
)

BACKEND_FAILURES_TOTAL = Counter(
    "vm_backend_failures_total",
    "Failed backend calls by operation",
    ["operation"],
)

# -----------------------------
# Host / capacity metrics
# -----------------------------
HOST_CPU_USAGE = Gauge(
    "vm_manager_host_cpu_usage_percent",
    "Host CPU usage in percent",
)

HOST_MEMORY_USAGE = Gauge(
    "vm_manager_host_memory_usage_percent",
    "Host memory usage in percent",
)

HOST_DISK_USAGE = Gauge(
    "vm_manager_host_disk_usage_percent",
    "Host disk usage (root filesystem) in percent",
)

BACKEND_INFO = Gauge(
    "vm_manager_backend_type",
    "Label gauge exposing the active VM backend (for Grafana filters)",
    ["type"],
)


def init_static_metrics(backend_name: str) -> None:
    # Set a value 1.0 for the active backend, 0.0 for others
    for name in ["simulated", "libvirt"]:
        BACKEND_INFO.labels(type=name).set(1.0 if name == backend_name else 0.0)


def record_vm_created(owner: Optional[str]) -> None:
    owner_label = owner or "anonymous"
    VM_CREATED_TOTAL.labels(owner=owner_label).inc()
    VM_PER_USER.labels(owner=owner_label).inc()
    VM_LAST_ACTIVITY.labels(owner=owner_label).set(time.time())


def record_vm_deleted(owner: Optional[str]) -> None:
    owner_label = owner or "anonymous"
    VM_PER_USER.labels(owner=owner_label).dec()
    VM_LAST_ACTIVITY.labels(owner=owner_label).set(time.time())


def record_vm_activity(owner: Optional[str]) -> None:
    owner_label = owner or "anonymous"
    VM_LAST_ACTIVITY.labels(owner=owner_label).set(time.time())


def record_admission_rejected(reason: str) -> None:
    ADMISSION_REJECTED_TOTAL.labels(reason=reason).inc()


def record_backend_failure(operation: str) -> None:
    BACKEND_FAILURES_TOTAL.labels(operation=operation).inc()


def record_status_counts(records: Iterable[VMRecord]) -> None:
    counts = {status: 0 for status in VMStatus}
    for record in records:
        counts[record.status] += 1
    for status, count in counts.items():
        VM_BY_STATUS.labels(status=status.value).set(count)


def sample_host_stats() -> dict:
    """One psutil reading of host load, shared by the collector and /ws/stats."""
    net = psutil.net_io_counters()
    return {
        "cpu_usage": psutil.cpu_percent(interval=None),
        "memory_usage": psutil.virtual_memory().percent,
        "disk_usage": psutil.disk_usage("/").percent,
        "network_in": net.bytes_recv if net else 0,
        "network_out": net.bytes_sent if net else 0,
    }


def start_background_collectors() -> None:
    """
    Collect host-level capacity metrics periodically using psutil.
    This is enough for Grafana dashboards for CPU/memory/disk.
    """

    def loop() -> None:
        log_event("[metrics] Starting background host metrics collector")
        while True:
            try:
                HOST_CPU_USAGE.set(psutil.cpu_percent(interval=1))
                HOST_MEMORY_USAGE.set(psutil.virtual_memory().percent)
                HOST_DISK_USAGE.set(psutil.disk_usage("/").percent)
            except (OSError, RuntimeError) as e:
                log_event(f"[metrics] Collector error: {e}", logging.WARNING)
            time.sleep(METRICS_REFRESH_INTERVAL)

    t = threading.Thread(target=loop, daemon=True)
    t.start()
