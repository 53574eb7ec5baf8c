"""
Shared pytest fixtures for metalscale tests.
Fakes every power capability and the probe so no machine, BMC or network is touched.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional, Tuple

import pytest

from metalscale.core import Reconciler
from metalscale.persistence import (
    ControlType,
    IPMIControl,
    MachineRecord,
    MachineSpec,
    MachineStatus,
    Phase,
    PowerState,
    RecordStore,
    WOLControl,
)
from metalscale.power import (
    BMCClient,
    IPMICommandError,
    PowerBackends,
    ReachabilityProbe,
    ShutdownError,
    ShutdownExecutor,
    WakeError,
    WakeSender,
)


FIXED_NOW = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Power capability fakes
# ---------------------------------------------------------------------------

@dataclass
class FakeWakeSender(WakeSender):
    calls: List[Tuple[str, Optional[int], Optional[str]]] = field(default_factory=list)
    fail: bool = False

    def wake(self, mac_address, port=None, broadcast_address=None):
        self.calls.append((mac_address, port, broadcast_address))
        if self.fail:
            raise WakeError("network unreachable")


@dataclass
class FakeShutdownExecutor(ShutdownExecutor):
    calls: List[Tuple[str, Optional[str]]] = field(default_factory=list)
    fail: bool = False

    def shutdown(self, host, user=None):
        self.calls.append((host, user))
        if self.fail:
            raise ShutdownError("connection refused")


@dataclass
class FakeBMCClient(BMCClient):
    calls: List[Tuple[str, str]] = field(default_factory=list)
    powered: bool = False
    fail: bool = False

    def power_on(self, address, username, password):
        self.calls.append(("on", address))
        if self.fail:
            raise IPMICommandError("BMC did not answer")
        self.powered = True

    def power_off(self, address, username, password):
        self.calls.append(("off", address))
        if self.fail:
            raise IPMICommandError("BMC did not answer")
        self.powered = False

    def get_power_status(self, address, username, password):
        return self.powered


@dataclass
class FakeProbe(ReachabilityProbe):
    reachable: bool = False
    probed: List[str] = field(default_factory=list)

    def is_reachable(self, address):
        self.probed.append(address)
        return self.reachable


@dataclass
class FakeBackends:
    wake: FakeWakeSender = field(default_factory=FakeWakeSender)
    shutdown: FakeShutdownExecutor = field(default_factory=FakeShutdownExecutor)
    bmc: FakeBMCClient = field(default_factory=FakeBMCClient)
    probe: FakeProbe = field(default_factory=FakeProbe)

    def bundle(self) -> PowerBackends:
        return PowerBackends(
            wake_sender=self.wake,
            shutdown_executor=self.shutdown,
            bmc_client=self.bmc,
            probe=self.probe,
        )

    def power_calls(self) -> int:
        return len(self.wake.calls) + len(self.shutdown.calls) + len(self.bmc.calls)


@pytest.fixture
def fakes():
    return FakeBackends()


# ---------------------------------------------------------------------------
# Store and records
# ---------------------------------------------------------------------------

@pytest.fixture
def store(tmp_path):
    """File-backed store in a temporary directory."""
    s = RecordStore(str(tmp_path / "machines.db"))
    yield s
    s.close()


def wol_machine(
    name: str = "node-01",
    power_state: Optional[PowerState] = PowerState.ON,
    phase: Optional[Phase] = None,
    mac_address: Optional[str] = "aa:bb:cc:dd:ee:01",
    address: Optional[str] = "10.0.0.21",
    failure_count: int = 0,
    labels: Optional[dict] = None,
) -> MachineRecord:
    return MachineRecord(
        name=name,
        spec=MachineSpec(
            power_state=power_state,
            control_type=ControlType.WOL,
            wol=WOLControl(address=address, mac_address=mac_address, port=9, user="admin"),
        ),
        status=MachineStatus(phase=phase, failure_count=failure_count),
        labels=labels or {},
    )


def ipmi_machine(
    name: str = "bmc-01",
    power_state: Optional[PowerState] = PowerState.ON,
    phase: Optional[Phase] = None,
    username: Optional[str] = "ADMIN",
    password: Optional[str] = "secret",
) -> MachineRecord:
    return MachineRecord(
        name=name,
        spec=MachineSpec(
            power_state=power_state,
            control_type=ControlType.IPMI,
            ipmi=IPMIControl(address="10.0.1.22", username=username, password=password),
        ),
        status=MachineStatus(phase=phase),
    )


@pytest.fixture
def reconciler(store, fakes):
    return Reconciler(
        store,
        fakes.bundle(),
        failure_threshold=3,
        requeue_interval=60,
        clock=lambda: FIXED_NOW,
    )
