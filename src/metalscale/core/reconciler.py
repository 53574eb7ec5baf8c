#!/usr/bin/env python3
"""Machine Reconciler - Converges observed power state with desired power state.

One call handles one machine: read its record, probe it, advance its phase,
dispatch at most one power action and write the status back. Retries happen
only across calls, through the requeue delay returned to the scheduler.

Phase transitions:

    unset/offline --reachable--> active
    unset/active  --unreachable--> offline
    offline --power on--> pending --reachable--> active
    active  --power off--> draining --unreachable--> offline
    any     --power action error / threshold / no address--> failed
"""

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Callable, Optional

from metalscale.config.config import DEFAULT_FAILURE_THRESHOLD, DEFAULT_REQUEUE_INTERVAL
from metalscale.persistence.records import (
    ControlType,
    IPMIControl,
    MachineRecord,
    MachineSpec,
    MachineStatus,
    Phase,
    PowerState,
    WOLControl,
)
from metalscale.persistence.store import RecordStore
from metalscale.power.base import PowerControlError
from metalscale.power.factory import PowerBackends


logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


class ReconcileError(Exception):
    """Base exception for reconciliation errors."""


class ConfigurationError(ReconcileError):
    """Raised when a machine's control parameters are incomplete."""


class PowerActionError(ReconcileError):
    """Raised when a power backend fails during a power action."""


@dataclass
class Observation:
    """Outcome of folding a reachability check into a machine's status.

    Attributes:
        status: Status after the check
        settled: True if reconciliation stops here without a power action
        requeue: True if the machine should be checked again later
    """

    status: MachineStatus
    settled: bool = False
    requeue: bool = False


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def resolve_address(spec: MachineSpec) -> Optional[str]:
    """Return the network address to probe for a machine, if configured."""
    if spec.control_type is ControlType.WOL:
        return spec.wol.address if spec.wol else None
    if spec.control_type is ControlType.IPMI:
        return spec.ipmi.address if spec.ipmi else None
    return None


def current_power_state(phase: Optional[Phase]) -> PowerState:
    """Map a phase to the power state it stands for."""
    if phase in (Phase.ACTIVE, Phase.PENDING):
        return PowerState.ON
    return PowerState.OFF


def clear_failure(status: MachineStatus, phase: Phase) -> MachineStatus:
    return replace(status, phase=phase, message="", failing_since=None, failure_count=0)


def record_failure(status: MachineStatus, now: datetime, threshold: int) -> MachineStatus:
    """Extend the failure streak, marking the machine failed once it reaches the threshold."""
    failing_since = status.failing_since or now
    failure_count = status.failure_count + 1
    phase = Phase.FAILED if failure_count >= threshold else status.phase
    return replace(status, phase=phase, failing_since=failing_since, failure_count=failure_count)


def observe(
    status: MachineStatus,
    reachable: bool,
    now: datetime,
    threshold: int = DEFAULT_FAILURE_THRESHOLD,
) -> Observation:
    """Fold a reachability check into a machine's status.

    Args:
        status: Current status
        reachable: Probe result
        now: Timestamp used to start a failure streak
        threshold: Consecutive failures before the machine is marked failed

    Returns:
        Observation with the new status and whether to stop or requeue
    """
    phase = status.phase

    if phase is Phase.PENDING:
        if reachable:
            return Observation(clear_failure(status, Phase.ACTIVE), settled=True)
        new_status = record_failure(status, now, threshold)
        return Observation(new_status, settled=True, requeue=new_status.phase is not Phase.FAILED)

    if phase is Phase.DRAINING:
        if not reachable:
            return Observation(clear_failure(status, Phase.OFFLINE), settled=True)
        new_status = record_failure(status, now, threshold)
        return Observation(new_status, settled=True, requeue=new_status.phase is not Phase.FAILED)

    if phase is Phase.ACTIVE:
        if not reachable:
            return Observation(replace(status, phase=Phase.OFFLINE))
        return Observation(status)

    # Offline or never classified
    return Observation(replace(status, phase=Phase.ACTIVE if reachable else Phase.OFFLINE))


def _require_wol(spec: MachineSpec) -> WOLControl:
    if spec.wol is None:
        raise ConfigurationError("WOL config is required")
    return spec.wol


def _require_ipmi(spec: MachineSpec) -> IPMIControl:
    if spec.ipmi is None:
        raise ConfigurationError("IPMI config is required")
    if not spec.ipmi.address:
        raise ConfigurationError("IPMI address is required")
    if not spec.ipmi.username or not spec.ipmi.password:
        raise ConfigurationError("IPMI username and password are required")
    return spec.ipmi


class Reconciler:
    """Reconciles one machine at a time against its desired power state.

    Holds no locks; the scheduler serializes calls for the same machine.

    Attributes:
        store: Record store, read for records and written for status only
        backends: Power capabilities and reachability probe
        failure_threshold: Consecutive failures before a machine is marked failed
        requeue_interval: Seconds to wait before re-checking a pending transition
    """

    def __init__(
        self,
        store: RecordStore,
        backends: PowerBackends,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        requeue_interval: float = DEFAULT_REQUEUE_INTERVAL,
        clock: Clock = _utcnow,
    ) -> None:
        self.store = store
        self.backends = backends
        self.failure_threshold = failure_threshold
        self.requeue_interval = requeue_interval
        self._clock = clock

    def reconcile(self, name: str) -> Optional[float]:
        """Advance one machine towards its desired power state.

        Args:
            name: Machine name

        Returns:
            Seconds after which the machine should be reconciled again, or None

        Raises:
            ConfigurationError: If the machine has no address or incomplete control parameters
            PowerActionError: If a power backend fails
            StoreError: If the store read or write fails (ConflictError on a stale write)
        """
        record = self.store.get(name)
        if record is None:
            logger.debug(f"Machine {name} not found, nothing to reconcile")
            return None

        desired = record.spec.power_state or PowerState.OFF
        status = record.status

        if status.phase is Phase.FAILED:
            logger.debug(f"Machine {name} is failed, skipping")
            return None

        if status.failure_count >= self.failure_threshold:
            logger.warning(
                f"Machine {name} reached {status.failure_count} consecutive failures, marking failed"
            )
            self._write_status(record, replace(status, phase=Phase.FAILED))
            return None

        address = resolve_address(record.spec)
        if not address:
            self._write_status(
                record,
                replace(status, phase=Phase.FAILED, message="No address configured for machine"),
            )
            raise ConfigurationError(f"No address configured for machine {name}")

        reachable = self.backends.probe.is_reachable(address)
        logger.debug(f"Machine {name} ({address}) reachable={reachable}")

        observation = observe(status, reachable, self._clock(), self.failure_threshold)
        if observation.status != status:
            record = self._write_status(record, observation.status)
        status = observation.status

        if observation.settled:
            return self.requeue_interval if observation.requeue else None

        if current_power_state(status.phase) is desired:
            return None

        try:
            if desired is PowerState.ON:
                self._power_on(record.spec)
                next_phase = Phase.PENDING
            else:
                self._power_off(record.spec)
                next_phase = Phase.DRAINING
        except (ConfigurationError, PowerControlError) as exc:
            msg = f"Power action failed: {exc}"
            logger.error(f"Machine {name}: {msg}")
            self._write_status(record, replace(status, phase=Phase.FAILED, message=msg))
            if isinstance(exc, ConfigurationError):
                raise
            raise PowerActionError(msg) from exc

        self._write_status(record, replace(status, phase=next_phase, message=""))
        logger.info(f"Machine {name} powering {desired.value}, now {next_phase.value}")
        return self.requeue_interval

    def _write_status(self, record: MachineRecord, status: MachineStatus) -> MachineRecord:
        if status.phase is not record.status.phase:
            old = record.status.phase.value if record.status.phase else "unset"
            new = status.phase.value if status.phase else "unset"
            logger.info(f"Machine {record.name}: {old} -> {new}")
        return self.store.update_status(replace(record, status=status))

    def _power_on(self, spec: MachineSpec) -> None:
        if spec.control_type is ControlType.WOL:
            wol = _require_wol(spec)
            if not wol.mac_address:
                raise ConfigurationError("WOL MAC address is required")
            self.backends.wake_sender.wake(wol.mac_address, wol.port, wol.broadcast_address)
        elif spec.control_type is ControlType.IPMI:
            ipmi = _require_ipmi(spec)
            self.backends.bmc_client.power_on(ipmi.address, ipmi.username, ipmi.password)
        else:
            raise ConfigurationError(f"Unknown control type: {spec.control_type}")

    def _power_off(self, spec: MachineSpec) -> None:
        if spec.control_type is ControlType.WOL:
            wol = _require_wol(spec)
            if not wol.address:
                raise ConfigurationError("WOL address is required")
            self.backends.shutdown_executor.shutdown(wol.address, wol.user)
        elif spec.control_type is ControlType.IPMI:
            ipmi = _require_ipmi(spec)
            self.backends.bmc_client.power_off(ipmi.address, ipmi.username, ipmi.password)
        else:
            raise ConfigurationError(f"Unknown control type: {spec.control_type}")
