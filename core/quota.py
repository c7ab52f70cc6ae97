import logging
import threading
import uuid
from dataclasses import dataclass, field
from typing import Dict, Optional

from config.settings import (
    DEFAULT_QUOTA_ACCELERATORS,
    DEFAULT_QUOTA_CPU,
    DEFAULT_QUOTA_DISK_GB,
    DEFAULT_QUOTA_RAM_MB,
)
from core.errors import CapacityError, RejectReason
from core.logger import log_event
from schemas.quota_schema import QuotaEntry, QuotaLimits, ResourceRequest, UsageEntry


@dataclass(frozen=True)
class Reservation:
    """Resources held for a VM between admission and the backend's answer."""

    principal: str
    vm_id: str
    request: ResourceRequest
    reservation_id: str = field(default_factory=lambda: str(uuid.uuid4()))


@dataclass
class _Account:
    quota: QuotaEntry
    usage: UsageEntry
    # committed allocation per VM, subtracted exactly on release
    allocations: Dict[str, ResourceRequest] = field(default_factory=dict)
    pending: Dict[str, Reservation] = field(default_factory=dict)


class QuotaLedger:
    """
    Per-principal reserved-vs-limit bookkeeping.

    A reservation is held as pending while the backend works and counts
    against the limit for every concurrent admission, but only shows up in
    get_usage() once committed. Cancelling a pending reservation therefore
    leaves no visible trace.
    """

    def __init__(self, default_limits: Optional[QuotaLimits] = None) -> None:
        self._lock = threading.Lock()
        self._accounts: Dict[str, _Account] = {}
        self._default_limits = default_limits or QuotaLimits(
            cpu_limit=DEFAULT_QUOTA_CPU,
            ram_limit_mb=DEFAULT_QUOTA_RAM_MB,
            disk_limit_gb=DEFAULT_QUOTA_DISK_GB,
            accelerator_limit=DEFAULT_QUOTA_ACCELERATORS,
        )

    # ------------------------------------------------------------------
    # Internal helpers (caller holds self._lock)
    # ------------------------------------------------------------------
    def _account(self, principal: str) -> _Account:
        account = self._accounts.get(principal)
        if account is None:
            account = _Account(
                quota=QuotaEntry(principal=principal, **self._default_limits.model_dump()),
                usage=UsageEntry(principal=principal),
            )
            self._accounts[principal] = account
            log_event(f"[quota] Created quota entry for principal '{principal}'")
        return account

    @staticmethod
    def _projected(account: _Account, vm_id: str, request: ResourceRequest) -> ResourceRequest:
        """Usage if `request` replaced whatever `vm_id` holds now."""
        usage = account.usage
        cpu = usage.cpu_used
        ram = usage.ram_used_mb
        disk = usage.disk_used_gb
        accel = usage.accelerators_used

        for reservation in account.pending.values():
            cpu += reservation.request.cpu
            ram += reservation.request.ram_mb
            disk += reservation.request.disk_gb
            accel += reservation.request.accelerators

        current = account.allocations.get(vm_id)
        if current is not None:
            cpu -= current.cpu
            ram -= current.ram_mb
            disk -= current.disk_gb
            accel -= current.accelerators

        return ResourceRequest(
            cpu=cpu + request.cpu,
            ram_mb=ram + request.ram_mb,
            disk_gb=disk + request.disk_gb,
            accelerators=accel + request.accelerators,
        )

    def _check(self, account: _Account, vm_id: str, request: ResourceRequest) -> None:
        projected = self._projected(account, vm_id, request)
        quota = account.quota
        checks = [
            ("CPU", projected.cpu, quota.cpu_limit, ""),
            ("RAM", projected.ram_mb, quota.ram_limit_mb, " MB"),
            ("Disk", projected.disk_gb, quota.disk_limit_gb, " GB"),
            ("Accelerator", projected.accelerators, quota.accelerator_limit, ""),
        ]
        for label, wanted, limit, unit in checks:
            if wanted > limit:
                raise CapacityError(
                    RejectReason.QUOTA_EXCEEDED,
                    f"{label} quota exceeded: {wanted}/{limit}{unit}",
                    {
                        "principal": quota.principal,
                        "requested": request.model_dump(),
                        "usage": account.usage.model_dump(),
                        "quota": quota.model_dump(),
                    },
                )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def set_quota(self, principal: str, limits: QuotaLimits) -> QuotaEntry:
        with self._lock:
            account = self._account(principal)
            account.quota = QuotaEntry(principal=principal, **limits.model_dump())
            log_event(f"[quota] Limits for '{principal}' set to {limits.model_dump()}")
            return account.quota.model_copy()

    def get_quota(self, principal: str) -> QuotaEntry:
        with self._lock:
            return self._account(principal).quota.model_copy()

    def get_usage(self, principal: str) -> UsageEntry:
        with self._lock:
            return self._account(principal).usage.model_copy(deep=True)

    def check(self, principal: str, request: ResourceRequest, vm_id: str = "") -> None:
        """Raise CapacityError if `request` would push `principal` over a limit."""
        with self._lock:
            self._check(self._account(principal), vm_id, request)

    def reserve(self, principal: str, vm_id: str, request: ResourceRequest) -> Reservation:
        """
        Check and hold `request` in one step.

        When `vm_id` already has a committed allocation the check is made
        against the difference, so an update that shrinks a VM always fits.
        """
        with self._lock:
            account = self._account(principal)
            self._check(account, vm_id, request)
            current = account.allocations.get(vm_id)
            held = request
            if current is not None:
                held = ResourceRequest(
                    cpu=max(request.cpu - current.cpu, 0),
                    ram_mb=max(request.ram_mb - current.ram_mb, 0),
                    disk_gb=max(request.disk_gb - current.disk_gb, 0),
                    accelerators=max(request.accelerators - current.accelerators, 0),
                )
            reservation = Reservation(principal=principal, vm_id=vm_id, request=request)
            account.pending[reservation.reservation_id] = Reservation(
                principal=principal,
                vm_id=vm_id,
                request=held,
                reservation_id=reservation.reservation_id,
            )
            return reservation

    def commit(self, reservation: Reservation) -> None:
        """Make a reservation part of the principal's usage."""
        with self._lock:
            account = self._account(reservation.principal)
            if account.pending.pop(reservation.reservation_id, None) is None:
                raise KeyError(f"unknown reservation {reservation.reservation_id}")

            usage = account.usage
            previous = account.allocations.get(reservation.vm_id)
            if previous is not None:
                self._subtract(usage, previous)
            else:
                usage.vms.append(reservation.vm_id)

            request = reservation.request
            usage.cpu_used += request.cpu
            usage.ram_used_mb += request.ram_mb
            usage.disk_used_gb += request.disk_gb
            usage.accelerators_used += request.accelerators
            account.allocations[reservation.vm_id] = request
            log_event(
                f"[quota] Committed {request.model_dump()} for VM {reservation.vm_id} "
                f"(principal={reservation.principal})"
            )

    def cancel(self, reservation: Reservation) -> None:
        with self._lock:
            account = self._account(reservation.principal)
            account.pending.pop(reservation.reservation_id, None)

    def release(self, principal: str, vm_id: str) -> None:
        """Return everything `vm_id` holds to `principal`'s quota."""
        with self._lock:
            account = self._account(principal)
            allocation = account.allocations.pop(vm_id, None)
            if allocation is None:
                log_event(
                    f"[quota] Release for unknown VM {vm_id} (principal={principal}) ignored", logging.WARNING
                )
                return
            self._subtract(account.usage, allocation)
            account.usage.vms.remove(vm_id)
            log_event(f"[quota] Released {allocation.model_dump()} for VM {vm_id} (principal={principal})")

    @staticmethod
    def _subtract(usage: UsageEntry, allocation: ResourceRequest) -> None:
        usage.cpu_used -= allocation.cpu
        usage.ram_used_mb -= allocation.ram_mb
        usage.disk_used_gb -= allocation.disk_gb
        usage.accelerators_used -= allocation.accelerators
