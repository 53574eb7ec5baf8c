"""
Reconciler tests: phase transitions, power dispatch, failure streaks.
"""

from datetime import timedelta

import pytest

from conftest import FIXED_NOW, ipmi_machine, wol_machine
from metalscale.core import ConfigurationError, PowerActionError, Reconciler
from metalscale.core.reconciler import current_power_state, observe, record_failure
from metalscale.persistence import MachineStatus, Phase, PowerState


def _status(store, name="node-01"):
    return store.get(name).status


class TestScenarios:
    """End-to-end reconcile passes over a single WOL machine."""

    def test_power_on_from_unset(self, store, fakes, reconciler):
        store.create(wol_machine(power_state=PowerState.ON, phase=None))
        fakes.probe.reachable = False

        requeue = reconciler.reconcile("node-01")

        assert fakes.wake.calls == [("aa:bb:cc:dd:ee:01", 9, None)]
        assert _status(store).phase is Phase.PENDING
        assert requeue == 60

    def test_pending_becomes_active_when_reachable(self, store, fakes, reconciler):
        store.create(wol_machine(phase=Phase.PENDING, failure_count=2))
        fakes.probe.reachable = True

        requeue = reconciler.reconcile("node-01")

        status = _status(store)
        assert status.phase is Phase.ACTIVE
        assert status.failure_count == 0
        assert status.failing_since is None
        assert requeue is None
        assert fakes.power_calls() == 0

    def test_power_off_while_active(self, store, fakes, reconciler):
        store.create(wol_machine(power_state=PowerState.OFF, phase=Phase.ACTIVE))
        fakes.probe.reachable = True

        requeue = reconciler.reconcile("node-01")

        assert fakes.shutdown.calls == [("10.0.0.21", "admin")]
        assert _status(store).phase is Phase.DRAINING
        assert requeue == 60

    def test_draining_becomes_offline_when_unreachable(self, store, fakes, reconciler):
        store.create(wol_machine(power_state=PowerState.OFF, phase=Phase.DRAINING))
        fakes.probe.reachable = False

        requeue = reconciler.reconcile("node-01")

        assert _status(store).phase is Phase.OFFLINE
        assert requeue is None
        assert fakes.power_calls() == 0

    def test_missing_mac_is_configuration_error(self, store, fakes, reconciler):
        store.create(wol_machine(mac_address=None))
        fakes.probe.reachable = False

        with pytest.raises(ConfigurationError):
            reconciler.reconcile("node-01")

        assert fakes.wake.calls == []
        status = _status(store)
        assert status.phase is Phase.FAILED
        assert "MAC" in status.message


class TestIdempotence:
    """Converged machines cause no writes and no power calls."""

    @pytest.mark.parametrize(
        "desired,phase,reachable",
        [
            (PowerState.ON, Phase.ACTIVE, True),
            (PowerState.OFF, Phase.OFFLINE, False),
        ],
    )
    def test_converged_record_untouched(self, store, fakes, reconciler, desired, phase, reachable):
        created = store.create(wol_machine(power_state=desired, phase=phase))
        fakes.probe.reachable = reachable

        assert reconciler.reconcile("node-01") is None
        assert reconciler.reconcile("node-01") is None

        assert store.get("node-01").version == created.version
        assert fakes.power_calls() == 0

    def test_failed_machine_is_left_alone(self, store, fakes, reconciler):
        created = store.create(wol_machine(phase=Phase.FAILED))

        assert reconciler.reconcile("node-01") is None

        assert fakes.probe.probed == []
        assert store.get("node-01").version == created.version

    def test_missing_record_is_success(self, reconciler, fakes):
        assert reconciler.reconcile("ghost") is None
        assert fakes.probe.probed == []


class TestFailureStreak:
    """Pending or draining machines that never get there end up failed."""

    def test_threshold_reached_after_exact_count(self, store, fakes, reconciler):
        store.create(wol_machine(phase=Phase.PENDING))
        fakes.probe.reachable = False

        assert reconciler.reconcile("node-01") == 60
        assert _status(store).failure_count == 1
        assert _status(store).failing_since == FIXED_NOW

        assert reconciler.reconcile("node-01") == 60
        assert _status(store).phase is Phase.PENDING

        assert reconciler.reconcile("node-01") is None
        status = _status(store)
        assert status.phase is Phase.FAILED
        assert status.failure_count == 3

    def test_failure_count_freezes_once_failed(self, store, fakes, reconciler):
        store.create(wol_machine(phase=Phase.PENDING, failure_count=2))
        fakes.probe.reachable = False

        reconciler.reconcile("node-01")
        version = store.get("node-01").version
        reconciler.reconcile("node-01")
        reconciler.reconcile("node-01")

        status = _status(store)
        assert status.phase is Phase.FAILED
        assert status.failure_count == 3
        assert store.get("node-01").version == version

    def test_external_count_at_threshold_marks_failed(self, store, fakes, reconciler):
        store.create(wol_machine(phase=Phase.OFFLINE, failure_count=3))

        assert reconciler.reconcile("node-01") is None

        assert _status(store).phase is Phase.FAILED
        assert fakes.probe.probed == []

    def test_draining_still_reachable_counts_failure(self, store, fakes, reconciler):
        store.create(wol_machine(power_state=PowerState.OFF, phase=Phase.DRAINING))
        fakes.probe.reachable = True

        assert reconciler.reconcile("node-01") == 60
        status = _status(store)
        assert status.phase is Phase.DRAINING
        assert status.failure_count == 1
        assert fakes.power_calls() == 0

    def test_failing_since_kept_across_streak(self):
        first = record_failure(MachineStatus(phase=Phase.PENDING), FIXED_NOW, 5)
        later = record_failure(first, FIXED_NOW + timedelta(minutes=1), 5)
        assert later.failing_since == FIXED_NOW
        assert later.failure_count == 2


class TestPhaseEdges:
    """Reachability folding never skips a power action."""

    def test_active_to_offline_on_loss(self, store, fakes, reconciler):
        store.create(wol_machine(power_state=PowerState.ON, phase=Phase.ACTIVE))
        fakes.probe.reachable = False

        # Unexpected loss: offline, then a wake is sent in the same pass
        assert reconciler.reconcile("node-01") == 60
        assert _status(store).phase is Phase.PENDING
        assert len(fakes.wake.calls) == 1

    def test_offline_reachable_classified_active(self, store, fakes, reconciler):
        store.create(wol_machine(power_state=PowerState.ON, phase=Phase.OFFLINE))
        fakes.probe.reachable = True

        assert reconciler.reconcile("node-01") is None
        assert _status(store).phase is Phase.ACTIVE
        assert fakes.power_calls() == 0

    def test_unset_desired_defaults_to_off(self, store, fakes, reconciler):
        store.create(wol_machine(power_state=None, phase=Phase.ACTIVE))
        fakes.probe.reachable = True

        reconciler.reconcile("node-01")
        assert _status(store).phase is Phase.DRAINING

    @pytest.mark.parametrize("phase", [Phase.ACTIVE, Phase.OFFLINE, None])
    def test_observe_never_yields_pending_or_draining(self, phase):
        for reachable in (True, False):
            result = observe(MachineStatus(phase=phase), reachable, FIXED_NOW)
            assert result.status.phase not in (Phase.PENDING, Phase.DRAINING)

    def test_current_power_state(self):
        assert current_power_state(Phase.ACTIVE) is PowerState.ON
        assert current_power_state(Phase.PENDING) is PowerState.ON
        assert current_power_state(Phase.DRAINING) is PowerState.OFF
        assert current_power_state(None) is PowerState.OFF


class TestIPMI:
    def test_power_on_through_bmc(self, store, fakes, reconciler):
        store.create(ipmi_machine(power_state=PowerState.ON))
        fakes.probe.reachable = False

        assert reconciler.reconcile("bmc-01") == 60
        assert fakes.bmc.calls == [("on", "10.0.1.22")]
        assert _status(store, "bmc-01").phase is Phase.PENDING

    def test_power_off_through_bmc(self, store, fakes, reconciler):
        store.create(ipmi_machine(power_state=PowerState.OFF, phase=Phase.ACTIVE))
        fakes.probe.reachable = True

        reconciler.reconcile("bmc-01")
        assert fakes.bmc.calls == [("off", "10.0.1.22")]
        assert fakes.shutdown.calls == []

    def test_missing_credentials(self, store, fakes, reconciler):
        store.create(ipmi_machine(password=None))
        fakes.probe.reachable = False

        with pytest.raises(ConfigurationError):
            reconciler.reconcile("bmc-01")
        assert fakes.bmc.calls == []
        assert _status(store, "bmc-01").phase is Phase.FAILED


class TestErrors:
    def test_backend_failure_marks_failed(self, store, fakes, reconciler):
        store.create(wol_machine())
        fakes.wake.fail = True

        with pytest.raises(PowerActionError):
            reconciler.reconcile("node-01")

        status = _status(store)
        assert status.phase is Phase.FAILED
        assert status.message.startswith("Power action failed:")
        assert "network unreachable" in status.message

    def test_missing_address(self, store, fakes, reconciler):
        store.create(wol_machine(address=None))

        with pytest.raises(ConfigurationError):
            reconciler.reconcile("node-01")

        status = _status(store)
        assert status.phase is Phase.FAILED
        assert status.message == "No address configured for machine"
        assert fakes.probe.probed == []

    def test_custom_threshold(self, store, fakes):
        reconciler = Reconciler(store, fakes.bundle(), failure_threshold=1, clock=lambda: FIXED_NOW)
        store.create(wol_machine(phase=Phase.PENDING))

        assert reconciler.reconcile("node-01") is None
        assert _status(store).phase is Phase.FAILED
