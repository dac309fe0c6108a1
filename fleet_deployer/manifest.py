"""Application manifest loading.

A manifest is a YAML document describing one application and its stacks::

    name: hello
    tags: [team=platform]
    stacks:
      - stack: hello-dev
        env: dev
        replacement_type: BlueGreen
        capacity: {min: 1, max: 2, desired: 1}
        regions:
          - region: us-east-1
            instance_type: t3.small
            ami_id: ami-0123456789
            healthcheck_target_group: hello-dev-tg

Validation errors raise ``ConfigurationError`` before anything talks to a
provider.
"""
import yaml

from .errors import ConfigurationError
from .models import (Alarm, ApiSpec, ApiTestTemplate, AppConfig, Capacity, DeploymentMode, RegionConfig,
                     ScalingPolicy, ScheduledAction, Stack)

TUPLE_FIELDS = ("security_groups", "target_groups", "load_balancers", "availability_zones",
                "scheduled_actions", "termination_policies")


def _require(data, key, where):
    value = data.get(key)
    if value in (None, ""):
        raise ConfigurationError(f"{where}: '{key}' is required")
    return value


def _known_fields(data, cls, where):
    allowed = set(cls.__dataclass_fields__)
    unknown = sorted(set(data) - allowed)
    if unknown:
        raise ConfigurationError(f"{where}: unknown fields {', '.join(unknown)}")


def parse_capacity(data, where):
    if not isinstance(data, dict):
        raise ConfigurationError(f"{where}: capacity must be a mapping of min, max and desired")
    try:
        values = [int(data.get(k, 0)) for k in ("min", "max", "desired")]
    except (TypeError, ValueError):
        raise ConfigurationError(f"{where}: capacity values must be integers: {data}")
    lo, hi, desired = values
    if any(v < 0 for v in values):
        raise ConfigurationError(f"{where}: capacity values cannot be negative: {data}")
    if not lo <= desired <= hi:
        raise ConfigurationError(f"{where}: capacity must satisfy min <= desired <= max, "
                                 f"min: {lo}, desired: {desired}, max: {hi}")
    return Capacity(min=lo, max=hi, desired=desired)


def validate_tags(tags, where):
    for tag in tags:
        if "=" not in str(tag) or str(tag).startswith("="):
            raise ConfigurationError(f"{where}: tag must be key=value: {tag}")
    return [str(t) for t in tags]


def parse_region(data, where):
    name = _require(data, "region", where)
    where = f"{where}.{name}"
    _known_fields(data, RegionConfig, where)
    fields = dict(data)
    for key in TUPLE_FIELDS:
        if key in fields:
            value = fields[key]
            fields[key] = tuple(value) if isinstance(value, (list, tuple)) else (value,)
    return RegionConfig(**fields)


def parse_stack(data):
    name = _require(data, "stack", "stack")
    where = f"stack {name}"
    _require(data, "env", where)
    _known_fields(data, Stack, where)

    mode = data.get("replacement_type", DeploymentMode.BLUE_GREEN.value)
    try:
        mode = DeploymentMode(mode)
    except ValueError:
        raise ConfigurationError(f"{where}: unknown replacement type: {mode}")

    regions = [parse_region(r, where) for r in data.get("regions") or []]
    if not regions:
        raise ConfigurationError(f"{where}: at least one region is required")
    names = [r.region for r in regions]
    if len(set(names)) != len(names):
        raise ConfigurationError(f"{where}: duplicated regions: {names}")

    policies = [ScalingPolicy(**p) for p in data.get("autoscaling") or []]
    policy_names = {p.name for p in policies}
    alarms = []
    for a in data.get("alarms") or []:
        alarm = Alarm(**a)
        missing = [x for x in alarm.alarm_actions if x not in policy_names]
        if missing:
            raise ConfigurationError(f"{where}: alarm {alarm.name} refers to unknown scaling policies: {missing}")
        alarms.append(alarm)

    step = int(data.get("rolling_update_instance_count", 1))
    if step <= 0:
        raise ConfigurationError(f"{where}: rolling_update_instance_count must be > 0")
    rate = int(data.get("termination_delay_rate", 0))
    if not 0 <= rate <= 100:
        raise ConfigurationError(f"{where}: termination_delay_rate must be between 0 and 100")

    return Stack(
        stack=name,
        env=data["env"],
        replacement_type=mode,
        capacity=parse_capacity(data.get("capacity", {"min": 1, "max": 1, "desired": 1}), where),
        regions=regions,
        iam_instance_profile=data.get("iam_instance_profile", ""),
        ebs_optimized=bool(data.get("ebs_optimized", False)),
        tags=validate_tags(data.get("tags") or [], where),
        autoscaling=policies,
        alarms=alarms,
        pre_terminate_commands=list(data.get("pre_terminate_commands") or []),
        rolling_update_instance_count=step,
        termination_delay_rate=rate,
        api_test_enabled=bool(data.get("api_test_enabled", False)),
        api_test_template=data.get("api_test_template", ""),
    )


def parse_api_test_template(data):
    name = _require(data, "name", "api test template")
    apis = [ApiSpec(**a) for a in data.get("apis") or []]
    if not apis:
        raise ConfigurationError(f"api test template {name}: at least one api is required")
    return ApiTestTemplate(
        name=name,
        duration_s=float(data.get("duration_s", 10.0)),
        request_per_second=int(data.get("request_per_second", 5)),
        apis=apis,
    )


def parse_manifest(data):
    """Build and validate an ``AppConfig`` from decoded manifest data"""
    if not isinstance(data, dict):
        raise ConfigurationError("manifest must be a mapping")
    name = _require(data, "name", "manifest")

    actions = []
    for a in data.get("scheduled_actions") or []:
        capacity = a.get("capacity")
        actions.append(ScheduledAction(
            name=_require(a, "name", "scheduled action"),
            recurrence=_require(a, "recurrence", "scheduled action"),
            capacity=parse_capacity(capacity, f"scheduled action {a['name']}") if capacity else None,
        ))

    try:
        app = AppConfig(
            name=name,
            tags=validate_tags(data.get("tags") or [], "manifest"),
            scheduled_actions=actions,
            api_test_templates=[parse_api_test_template(t) for t in data.get("api_test_templates") or []],
            stacks=[parse_stack(s) for s in data.get("stacks") or []],
        )
    except TypeError as e:
        # unexpected keys in a nested section
        raise ConfigurationError(f"invalid manifest: {e}")

    if not app.stacks:
        raise ConfigurationError("manifest has no stacks")

    action_names = {a.name for a in app.scheduled_actions}
    for stack in app.stacks:
        if stack.api_test_enabled and app.api_test_template(stack.api_test_template) is None:
            raise ConfigurationError(f"stack {stack.stack}: api test template does not exist: "
                                     f"{stack.api_test_template}")
        for region in stack.regions:
            missing = [a for a in region.scheduled_actions if a not in action_names]
            if missing:
                raise ConfigurationError(f"stack {stack.stack}.{region.region}: unknown scheduled actions: {missing}")
    return app


def load_manifest(path):
    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigurationError(f"cannot read manifest {path}: {e}")
    except yaml.YAMLError as e:
        raise ConfigurationError(f"manifest is not valid YAML {path}: {e}")
    return parse_manifest(data)
