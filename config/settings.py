import json
import os
from pathlib import Path

# -----------------------------
# Base paths
# -----------------------------
BASE_DIR = Path(__file__).resolve().parent.parent  # project root

# -----------------------------
# Logging
# -----------------------------
LOG_DIR = Path(os.getenv("VM_MANAGER_LOG_DIR", str(BASE_DIR / "log")))
LOG_DIR.mkdir(parents=True, exist_ok=True)

LOG_FILE = LOG_DIR / "vm-manager.log"
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# -----------------------------
# Backend selection
# -----------------------------
# "simulated" keeps every VM in memory, "libvirt" talks to a real hypervisor.
VM_BACKEND = os.getenv("VM_BACKEND", "simulated").lower()

# common examples:
#   qemu:///system                  (KVM/QEMU on host)
#   qemu+ssh://root@host/system     (remote KVM host)
#   xen:///system                   (Xen)
LIBVIRT_URI = os.getenv("LIBVIRT_URI", "qemu:///system")
LIBVIRT_DOMAIN_TYPE = os.getenv("LIBVIRT_DOMAIN_TYPE", "kvm")

UEFI_LOADER_PATH = os.getenv("UEFI_LOADER_PATH", "/usr/share/OVMF/OVMF_CODE.fd")
DEFAULT_NETWORK = os.getenv("VM_DEFAULT_NETWORK", "default")

# Upper bound for a single define/start/stop/... call, in seconds
BACKEND_CALL_TIMEOUT = float(os.getenv("BACKEND_CALL_TIMEOUT", "60"))
BACKEND_WORKERS = int(os.getenv("BACKEND_WORKERS", "8"))

# -----------------------------
# Principals / quota
# -----------------------------
DEFAULT_PRINCIPAL = os.getenv("DEFAULT_PRINCIPAL", "root")

DEFAULT_QUOTA_CPU = int(os.getenv("DEFAULT_QUOTA_CPU", "32"))
DEFAULT_QUOTA_RAM_MB = int(os.getenv("DEFAULT_QUOTA_RAM_MB", "65536"))
DEFAULT_QUOTA_DISK_GB = int(os.getenv("DEFAULT_QUOTA_DISK_GB", "1000"))
DEFAULT_QUOTA_ACCELERATORS = int(os.getenv("DEFAULT_QUOTA_ACCELERATORS", "8"))

# -----------------------------
# Accelerators
# -----------------------------
# (model, profile, memory_gb) triples the host can hand out as mediated devices.
_DEFAULT_ACCELERATOR_PROFILES = [
    {"model": "Tesla P100", "profile": "grid_p100-2q", "memory_gb": 2},
    {"model": "Tesla P100", "profile": "grid_p100-4q", "memory_gb": 4},
    {"model": "Tesla P100", "profile": "grid_p100-8q", "memory_gb": 8},
    {"model": "Quadro RTX6000", "profile": "nvidia-rtx6000-4q", "memory_gb": 4},
    {"model": "Quadro RTX6000", "profile": "nvidia-rtx6000-8q", "memory_gb": 8},
    {"model": "Quadro RTX6000", "profile": "nvidia-rtx6000-16q", "memory_gb": 16},
]

ACCELERATOR_PROFILES = (
    json.loads(os.environ["ACCELERATOR_PROFILES"])
    if os.getenv("ACCELERATOR_PROFILES")
    else _DEFAULT_ACCELERATOR_PROFILES
)

# -----------------------------
# Validation
# -----------------------------
CHECK_ISO_EXISTS = os.getenv("CHECK_ISO_EXISTS", "false").lower() == "true"

# -----------------------------
# Metrics / monitoring
# -----------------------------
METRICS_ENABLED = os.getenv("METRICS_ENABLED", "true").lower() == "true"
METRICS_REFRESH_INTERVAL = int(os.getenv("METRICS_REFRESH_INTERVAL", "5"))
WS_STATUS_INTERVAL = float(os.getenv("WS_STATUS_INTERVAL", "1.0"))

# -----------------------------
# Misc
# -----------------------------
DEBUG = os.getenv("DEBUG", "true").lower() == "true"
