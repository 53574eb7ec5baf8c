"""
Record store tests: versioning, split spec/status writes, change notification.
"""

import pytest

from conftest import FIXED_NOW, ipmi_machine, wol_machine
from metalscale.persistence import (
    ChangeType,
    ConflictError,
    ControlType,
    MachineStatus,
    Phase,
    PowerState,
    RecordExistsError,
    RecordNotFoundError,
    RecordStore,
)


class TestCrud:
    def test_create_and_get(self, store):
        created = store.create(wol_machine(labels={"gpu-type": "a100"}))
        assert created.version == 1

        record = store.get("node-01")
        assert record.spec.power_state is PowerState.ON
        assert record.spec.control_type is ControlType.WOL
        assert record.spec.wol.mac_address == "aa:bb:cc:dd:ee:01"
        assert record.spec.ipmi is None
        assert record.labels == {"gpu-type": "a100"}
        assert record.status == MachineStatus()

    def test_ipmi_record(self, store):
        store.create(ipmi_machine())
        record = store.get("bmc-01")
        assert record.spec.control_type is ControlType.IPMI
        assert record.spec.ipmi.username == "ADMIN"
        assert record.spec.wol is None

    def test_get_missing(self, store):
        assert store.get("nope") is None

    def test_create_duplicate(self, store):
        store.create(wol_machine())
        with pytest.raises(RecordExistsError):
            store.create(wol_machine())

    def test_list_ordered_by_name(self, store):
        for name in ("c", "a", "b"):
            store.create(wol_machine(name=name))
        assert [r.name for r in store.list()] == ["a", "b", "c"]

    def test_delete(self, store):
        store.create(wol_machine())
        store.delete("node-01")
        assert store.get("node-01") is None
        with pytest.raises(RecordNotFoundError):
            store.delete("node-01")

    def test_memory_store(self):
        s = RecordStore(":memory:")
        try:
            s.create(wol_machine())
            assert len(s.list()) == 1
        finally:
            s.close()


class TestVersioning:
    def test_update_bumps_version(self, store):
        record = store.create(wol_machine())
        record.spec.power_state = PowerState.OFF
        updated = store.update_spec(record)
        assert updated.version == 2
        assert store.get("node-01").version == 2

    def test_stale_write_conflicts(self, store):
        store.create(wol_machine())
        first = store.get("node-01")
        second = store.get("node-01")

        first.spec.power_state = PowerState.OFF
        store.update_spec(first)

        second.status.phase = Phase.ACTIVE
        with pytest.raises(ConflictError):
            store.update_status(second)
        assert store.get("node-01").status.phase is None

    def test_update_missing(self, store):
        with pytest.raises(RecordNotFoundError):
            store.update_spec(wol_machine(name="ghost"))

    def test_status_write_keeps_spec(self, store):
        record = store.create(wol_machine())
        record.spec.power_state = PowerState.OFF
        record.status = MachineStatus(
            phase=Phase.PENDING, message="waking", failing_since=FIXED_NOW, failure_count=1
        )
        store.update_status(record)

        stored = store.get("node-01")
        assert stored.spec.power_state is PowerState.ON
        assert stored.status.phase is Phase.PENDING
        assert stored.status.failing_since == FIXED_NOW
        assert stored.status.failure_count == 1

    def test_spec_write_keeps_status(self, store):
        record = store.create(wol_machine(phase=Phase.ACTIVE))
        record.spec.power_state = PowerState.OFF
        record.status = MachineStatus()
        store.update_spec(record)

        stored = store.get("node-01")
        assert stored.spec.power_state is PowerState.OFF
        assert stored.status.phase is Phase.ACTIVE


class TestListeners:
    def test_change_types(self, store):
        seen = []
        store.add_listener(lambda name, change: seen.append((name, change)))

        record = store.create(wol_machine())
        record = store.update_spec(record)
        store.update_status(record)
        store.delete("node-01")

        assert seen == [
            ("node-01", ChangeType.CREATED),
            ("node-01", ChangeType.SPEC),
            ("node-01", ChangeType.STATUS),
            ("node-01", ChangeType.DELETED),
        ]

    def test_no_notification_on_conflict(self, store):
        store.create(wol_machine())
        stale = store.get("node-01")
        store.update_spec(store.get("node-01"))

        seen = []
        store.add_listener(lambda name, change: seen.append(change))
        with pytest.raises(ConflictError):
            store.update_spec(stale)
        assert seen == []

    def test_failing_listener_does_not_break_write(self, store):
        def broken(name, change):
            raise RuntimeError("boom")

        store.add_listener(broken)
        store.create(wol_machine())
        assert store.get("node-01") is not None
