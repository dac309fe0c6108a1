import textwrap

import pytest

from fleet_deployer.errors import ConfigurationError
from fleet_deployer.manifest import load_manifest, parse_manifest
from fleet_deployer.models import Capacity, DeploymentMode

MANIFEST = """
name: hello
tags: [team=platform]
scheduled_actions:
  - name: night
    recurrence: "0 22 * * *"
    capacity: {min: 1, max: 1, desired: 1}
api_test_templates:
  - name: smoke
    duration_s: 5
    request_per_second: 2
    apis:
      - method: GET
        url: http://hello.example/health
stacks:
  - stack: hello-dev
    env: dev
    replacement_type: RollingUpdate
    rolling_update_instance_count: 2
    capacity: {min: 2, max: 6, desired: 4}
    tags: [tier=web]
    autoscaling:
      - name: scale-out
        scaling_adjustment: 2
    alarms:
      - name: cpu-high
        metric: CPUUtilization
        threshold: 70
        alarm_actions: [scale-out]
    api_test_enabled: true
    api_test_template: smoke
    regions:
      - region: us-east-1
        instance_type: t3.small
        ami_id: ami-0123
        vpc: vpc-1
        healthcheck_target_group: hello-dev-tg
        security_groups: [hello-default]
        scheduled_actions: [night]
      - region: eu-west-1
        instance_type: t3.small
        ami_id: ami-0456
        healthcheck_target_group: hello-dev-tg
"""


def write(tmp_path, text):
    path = tmp_path / "manifest.yaml"
    path.write_text(textwrap.dedent(text))
    return str(path)


class TestManifestLoading:
    """Reading and validating manifests."""

    def test_load_full_manifest(self, tmp_path):
        app = load_manifest(write(tmp_path, MANIFEST))

        assert app.name == "hello"
        assert app.tags == ["team=platform"]
        assert app.scheduled_actions[0].capacity == Capacity(1, 1, 1)
        assert app.api_test_template("smoke").apis[0].url == "http://hello.example/health"

        stack = app.stacks[0]
        assert stack.replacement_type == DeploymentMode.ROLLING_UPDATE
        assert stack.capacity == Capacity(2, 6, 4)
        assert stack.rolling_update_instance_count == 2
        assert stack.autoscaling[0].scaling_adjustment == 2
        assert stack.alarms[0].alarm_actions == ["scale-out"]
        assert stack.region_names() == ["us-east-1", "eu-west-1"]

        region = stack.regions[0]
        assert region.security_groups == ("hello-default",)
        assert region.scheduled_actions == ("night",)

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError):
            load_manifest(str(tmp_path / "absent.yaml"))

    def test_invalid_yaml(self, tmp_path):
        with pytest.raises(ConfigurationError):
            load_manifest(write(tmp_path, "name: [unclosed"))


def minimal(**stack):
    fields = {"stack": "hello-dev", "env": "dev", "regions": [{"region": "us-east-1"}]}
    fields.update(stack)
    return {"name": "hello", "stacks": [fields]}


class TestManifestValidation:
    """Manifests are rejected before any provider call."""

    def test_minimal_defaults(self):
        stack = parse_manifest(minimal()).stacks[0]
        assert stack.replacement_type == DeploymentMode.BLUE_GREEN
        assert stack.capacity == Capacity(1, 1, 1)

    @pytest.mark.parametrize("capacity", [
        {"min": 3, "max": 2, "desired": 2},
        {"min": 1, "max": 4, "desired": 5},
        {"min": -1, "max": 1, "desired": 1},
        {"min": "one", "max": 1, "desired": 1},
    ])
    def test_bad_capacity(self, capacity):
        with pytest.raises(ConfigurationError):
            parse_manifest(minimal(capacity=capacity))

    def test_unknown_replacement_type(self):
        with pytest.raises(ConfigurationError, match="replacement type"):
            parse_manifest(minimal(replacement_type="Recreate"))

    def test_no_regions(self):
        with pytest.raises(ConfigurationError):
            parse_manifest(minimal(regions=[]))

    def test_duplicated_regions(self):
        with pytest.raises(ConfigurationError):
            parse_manifest(minimal(regions=[{"region": "us-east-1"}, {"region": "us-east-1"}]))

    def test_bad_tag(self):
        with pytest.raises(ConfigurationError):
            parse_manifest(minimal(tags=["no-separator"]))

    def test_alarm_with_unknown_policy(self):
        alarms = [{"name": "cpu", "metric": "CPUUtilization", "threshold": 50, "alarm_actions": ["ghost"]}]
        with pytest.raises(ConfigurationError, match="ghost"):
            parse_manifest(minimal(alarms=alarms))

    def test_unknown_field(self):
        with pytest.raises(ConfigurationError, match="unknown fields"):
            parse_manifest(minimal(replicas=3))

    def test_unknown_region_field(self):
        with pytest.raises(ConfigurationError):
            parse_manifest(minimal(regions=[{"region": "us-east-1", "subnet": "x"}]))

    def test_unknown_scheduled_action(self):
        with pytest.raises(ConfigurationError):
            parse_manifest(minimal(regions=[{"region": "us-east-1", "scheduled_actions": ["night"]}]))

    def test_api_test_template_must_exist(self):
        with pytest.raises(ConfigurationError):
            parse_manifest(minimal(api_test_enabled=True, api_test_template="smoke"))

    def test_rolling_step_must_be_positive(self):
        with pytest.raises(ConfigurationError):
            parse_manifest(minimal(rolling_update_instance_count=0))

    def test_termination_delay_rate_range(self):
        with pytest.raises(ConfigurationError):
            parse_manifest(minimal(termination_delay_rate=150))

    def test_no_stacks(self):
        with pytest.raises(ConfigurationError):
            parse_manifest({"name": "hello"})
