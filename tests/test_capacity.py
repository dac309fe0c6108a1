import pytest

from fleet_deployer.capacity import (CANARY_CAPACITY, decide_capacity, initial_rolling_capacity,
                                     is_finished_rolling_update, make_capacity, next_termination_target,
                                     retrieve_next_capacity, shrink_capacity, termination_delay_count)
from fleet_deployer.errors import ConfigurationError
from fleet_deployer.models import Capacity, DeploymentMode

INTENDED = Capacity(2, 6, 4)
PREVIOUS = Capacity(3, 9, 5)


class TestCapacityPolicy:
    """Capacity decision for new and completing resources."""

    @pytest.mark.parametrize("mode", list(DeploymentMode))
    def test_force_always_returns_intended(self, mode):
        assert decide_capacity(True, False, mode, 2, INTENDED, PREVIOUS) == INTENDED

    def test_force_wins_for_canary_start(self):
        assert decide_capacity(True, False, DeploymentMode.CANARY, 0, INTENDED) == INTENDED

    @pytest.mark.parametrize("mode", [DeploymentMode.BLUE_GREEN, DeploymentMode.DEPLOY_ONLY,
                                      DeploymentMode.ROLLING_UPDATE])
    def test_previous_capacity_is_kept(self, mode):
        assert decide_capacity(False, False, mode, 1, INTENDED, PREVIOUS) == PREVIOUS

    def test_no_previous_resources_uses_intended(self):
        assert decide_capacity(False, False, DeploymentMode.BLUE_GREEN, 0, INTENDED) == INTENDED

    def test_previous_resources_without_capacity_use_intended(self):
        assert decide_capacity(False, False, DeploymentMode.BLUE_GREEN, 2, INTENDED, None) == INTENDED

    def test_canary_start_is_minimal(self):
        assert decide_capacity(False, False, DeploymentMode.CANARY, 1, INTENDED, PREVIOUS) == CANARY_CAPACITY

    def test_canary_completion_restores_previous(self):
        assert decide_capacity(False, True, DeploymentMode.CANARY, 2, INTENDED, PREVIOUS) == PREVIOUS

    def test_make_capacity_clamps_negatives(self):
        assert make_capacity(-1, 2, 0) == Capacity(0, 2, 0)

    def test_make_capacity_rejects_invariant_violation(self):
        with pytest.raises(ConfigurationError):
            make_capacity(3, 2, 2)
        with pytest.raises(ConfigurationError):
            make_capacity(1, 2, 3)

    def test_shrink_capacity_stops_at_zero(self):
        assert shrink_capacity(Capacity(2, 4, 3), 1) == Capacity(1, 3, 2)
        assert shrink_capacity(Capacity(1, 1, 1), 3) == Capacity(0, 0, 0)


class TestRollingCapacity:
    """Stepping toward a rolling update target."""

    def test_initial_capacity_is_one_step(self):
        assert initial_rolling_capacity(2, Capacity(3, 10, 6)) == Capacity(2, 2, 2)

    def test_initial_capacity_never_exceeds_target(self):
        assert initial_rolling_capacity(5, Capacity(1, 3, 2)) == Capacity(1, 3, 2)

    @pytest.mark.parametrize("step", [1, 2, 3, 7])
    def test_converges_without_overshoot(self, step):
        target = Capacity(4, 11, 9)
        current = initial_rolling_capacity(step, target)
        seen = [current]
        while not is_finished_rolling_update(current, target):
            current = retrieve_next_capacity(current, target, step)
            assert current.min <= target.min
            assert current.max <= target.max
            assert current.desired <= target.desired
            seen.append(current)
        assert seen[-1] == target
        assert len(seen) <= 11

    def test_fields_at_target_stay_put(self):
        assert retrieve_next_capacity(Capacity(2, 3, 3), Capacity(2, 5, 4), 1) == Capacity(2, 4, 4)

    def test_step_must_be_positive(self):
        with pytest.raises(ConfigurationError):
            retrieve_next_capacity(Capacity(0, 0, 0), Capacity(1, 1, 1), 0)


class TestTerminationDelay:
    """Gradual shrinking of previous blue-green resources."""

    def test_reduce_count_is_rate_of_total(self):
        assert termination_delay_count(10, 30) == 3

    def test_reduce_count_is_at_least_one(self):
        assert termination_delay_count(3, 10) == 1

    def test_next_target_never_negative(self):
        assert next_termination_target(2, 3) == 0
        assert next_termination_target(5, 2) == 3
