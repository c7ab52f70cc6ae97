import threading

import pytest

from core.errors import CapacityError
from core.quota import QuotaLedger
from schemas.quota_schema import QuotaLimits, ResourceRequest


def _limits(cpu=4, ram=8192, disk=100, accel=1):
    return QuotaLimits(cpu_limit=cpu, ram_limit_mb=ram, disk_limit_gb=disk, accelerator_limit=accel)


def _request(cpu=1, ram=1024, disk=10, accel=0):
    return ResourceRequest(cpu=cpu, ram_mb=ram, disk_gb=disk, accelerators=accel)


def test_unknown_principal_gets_default_limits():
    ledger = QuotaLedger(default_limits=_limits(cpu=6))

    quota = ledger.get_quota("alice")
    usage = ledger.get_usage("alice")

    assert quota.principal == "alice"
    assert quota.cpu_limit == 6
    assert usage.cpu_used == 0
    assert usage.vms == []


def test_reserve_is_invisible_until_committed():
    ledger = QuotaLedger(default_limits=_limits())

    reservation = ledger.reserve("alice", "vm-1", _request(cpu=2, ram=2048, disk=20))
    assert ledger.get_usage("alice").cpu_used == 0

    ledger.commit(reservation)
    usage = ledger.get_usage("alice")
    assert usage.cpu_used == 2
    assert usage.ram_used_mb == 2048
    assert usage.disk_used_gb == 20
    assert usage.vms == ["vm-1"]


def test_cancel_leaves_no_trace():
    ledger = QuotaLedger(default_limits=_limits(cpu=2))

    reservation = ledger.reserve("alice", "vm-1", _request(cpu=2))
    ledger.cancel(reservation)

    assert ledger.get_usage("alice").cpu_used == 0
    # the released headroom is available again
    ledger.check("alice", _request(cpu=2))


def test_pending_reservations_count_against_the_limit():
    ledger = QuotaLedger(default_limits=_limits(cpu=4))

    ledger.reserve("alice", "vm-1", _request(cpu=3))
    with pytest.raises(CapacityError) as excinfo:
        ledger.reserve("alice", "vm-2", _request(cpu=2))

    assert excinfo.value.reason == "quota_exceeded"
    assert excinfo.value.status_code == 403


def test_exceeding_any_dimension_is_rejected_with_snapshot():
    ledger = QuotaLedger(default_limits=_limits(disk=50))

    with pytest.raises(CapacityError) as excinfo:
        ledger.check("bob", _request(disk=60))

    details = excinfo.value.details
    assert "Disk" in excinfo.value.message
    assert details["principal"] == "bob"
    assert details["requested"]["disk_gb"] == 60
    assert details["quota"]["disk_limit_gb"] == 50
    assert details["usage"]["disk_used_gb"] == 0


def test_principals_are_independent():
    ledger = QuotaLedger(default_limits=_limits(cpu=2))

    ledger.commit(ledger.reserve("alice", "vm-1", _request(cpu=2)))
    ledger.check("bob", _request(cpu=2))

    with pytest.raises(CapacityError):
        ledger.check("alice", _request(cpu=1))


def test_release_returns_exact_allocation():
    ledger = QuotaLedger(default_limits=_limits())
    ledger.commit(ledger.reserve("alice", "vm-1", _request(cpu=1, ram=1024, disk=10)))
    ledger.commit(ledger.reserve("alice", "vm-2", _request(cpu=2, ram=4096, disk=30, accel=1)))

    ledger.release("alice", "vm-2")

    usage = ledger.get_usage("alice")
    assert usage.cpu_used == 1
    assert usage.ram_used_mb == 1024
    assert usage.disk_used_gb == 10
    assert usage.accelerators_used == 0
    assert usage.vms == ["vm-1"]


def test_release_of_unknown_vm_is_ignored():
    ledger = QuotaLedger(default_limits=_limits())
    ledger.commit(ledger.reserve("alice", "vm-1", _request(cpu=1)))

    ledger.release("alice", "vm-404")

    assert ledger.get_usage("alice").cpu_used == 1


def test_resizing_a_vm_is_checked_against_the_difference():
    ledger = QuotaLedger(default_limits=_limits(cpu=4))
    ledger.commit(ledger.reserve("alice", "vm-1", _request(cpu=3)))

    # 3 -> 4 fits even though 3 + 4 would not
    ledger.commit(ledger.reserve("alice", "vm-1", _request(cpu=4)))

    usage = ledger.get_usage("alice")
    assert usage.cpu_used == 4
    assert usage.vms == ["vm-1"]


def test_lowering_limits_blocks_new_requests_but_keeps_usage():
    ledger = QuotaLedger(default_limits=_limits(cpu=4))
    ledger.commit(ledger.reserve("alice", "vm-1", _request(cpu=3)))

    entry = ledger.set_quota("alice", _limits(cpu=2))

    assert entry.cpu_limit == 2
    assert ledger.get_usage("alice").cpu_used == 3
    with pytest.raises(CapacityError):
        ledger.check("alice", _request(cpu=1))


def test_get_usage_returns_a_copy():
    ledger = QuotaLedger(default_limits=_limits())
    ledger.commit(ledger.reserve("alice", "vm-1", _request(cpu=1)))

    usage = ledger.get_usage("alice")
    usage.cpu_used = 99
    usage.vms.append("bogus")

    assert ledger.get_usage("alice").cpu_used == 1
    assert ledger.get_usage("alice").vms == ["vm-1"]


def test_concurrent_reservations_never_exceed_limit():
    ledger = QuotaLedger(default_limits=_limits(cpu=8, ram=1 << 20, disk=10000))
    accepted = []
    rejected = []
    lock = threading.Lock()

    def worker(i):
        try:
            reservation = ledger.reserve("alice", f"vm-{i}", _request(cpu=1))
        except CapacityError:
            with lock:
                rejected.append(i)
            return
        ledger.commit(reservation)
        with lock:
            accepted.append(i)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(20)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    usage = ledger.get_usage("alice")
    assert len(accepted) == 8
    assert len(rejected) == 12
    assert usage.cpu_used == 8
    assert usage.cpu_used <= ledger.get_quota("alice").cpu_limit
