from .errors import ConfigurationError
from .models import Capacity, DeploymentMode

CANARY_CAPACITY = Capacity(1, 1, 1)


def make_capacity(min, max, desired):
    """Build a capacity, clamping negatives to zero and checking min <= desired <= max"""
    min, max, desired = (v if v > 0 else 0 for v in (min, max, desired))
    if min > desired or min > max or desired > max:
        raise ConfigurationError(f"capacity modification is wrong, min: {min}, desired: {desired}, max: {max}")
    return Capacity(min=min, max=max, desired=desired)


def decide_capacity(force_manifest_capacity, complete_canary, mode, prev_asg_count, intended, previous=None):
    """Pick the capacity a new (or completing) resource should run with.

    ``intended`` is the manifest capacity; ``previous`` the last observed live
    capacity of the region, if any resource existed before this run.
    """
    if force_manifest_capacity:
        return intended

    if mode == DeploymentMode.CANARY and not complete_canary:
        return CANARY_CAPACITY

    if prev_asg_count > 0 and previous is not None:
        return previous
    return intended


def initial_rolling_capacity(step, target):
    """Starting point of a rolling update, one step above nothing"""
    return Capacity(
        min=min(step, target.min),
        max=min(step, target.max),
        desired=min(step, target.desired),
    )


def retrieve_next_capacity(current, target, step=1):
    """Move every field of ``current`` up by ``step`` without passing ``target``"""
    if step <= 0:
        raise ConfigurationError(f"rolling step size must be > 0: {step}")

    def advance(value, goal):
        if value >= goal:
            return value
        return min(value + step, goal)

    return Capacity(
        min=advance(current.min, target.min),
        max=advance(current.max, target.max),
        desired=advance(current.desired, target.desired),
    )


def is_finished_rolling_update(current, target):
    return current == target


def shrink_capacity(capacity, step):
    return make_capacity(capacity.min - step, capacity.max - step, capacity.desired - step)


def termination_delay_count(total, rate):
    """Number of instances removed per step for a gradual blue-green cleanup"""
    return max(1, (total * rate) // 100)


def next_termination_target(current, reduce_count):
    return max(0, current - reduce_count)
