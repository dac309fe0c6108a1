import json
import os
import tempfile

import pytest

from fleet_deployer.cli import build_parser, load_provider_factory, main, run_config_from_args
from fleet_deployer.errors import ConfigurationError

MANIFEST = """
name: hello
stacks:
  - stack: hello-dev
    env: dev
    capacity: {min: 1, max: 2, desired: 1}
    regions:
      - region: us-east-1
        healthcheck_target_group: hello-dev-tg
"""


@pytest.fixture
def manifest_path():
    with tempfile.NamedTemporaryFile(mode="w", suffix=".yaml", delete=False) as f:
        f.write(MANIFEST)
        path = f.name
    yield path
    os.unlink(path)


class TestArguments:
    """Command-line parsing."""

    def test_deploy_flags_map_to_run_config(self):
        args = build_parser().parse_args([
            "deploy", "--manifest", "m.yaml", "--region", "us-east-1", "--stack", "hello-dev",
            "--timeout", "120", "--polling-interval", "5", "--force-manifest-capacity", "--complete-canary",
            "--disable-metrics", "--slack-off", "--ami", "ami-1", "--override-instance-type", "c5.large",
            "--extra-tags", "a=b", "--release-notes", "notes",
        ])
        config = run_config_from_args(args)

        assert config.region == "us-east-1"
        assert config.stack == "hello-dev"
        assert config.timeout_s == 120
        assert config.polling_interval_s == 5
        assert config.force_manifest_capacity and config.complete_canary
        assert config.disable_metrics and config.slack_off
        assert config.ami == "ami-1"
        assert config.override_instance_type == "c5.large"
        assert config.extra_tags == "a=b"
        assert config.release_notes == "notes"

    def test_delete_uses_deploy_defaults(self):
        config = run_config_from_args(build_parser().parse_args(["delete", "--manifest", "m.yaml"]))
        assert config.force_manifest_capacity is False
        assert config.complete_canary is False
        assert config.ami == ""

    def test_subcommand_is_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])

    def test_bad_provider_specs(self):
        with pytest.raises(ConfigurationError):
            load_provider_factory("no_colon")
        with pytest.raises(ConfigurationError):
            load_provider_factory("module_that_does_not_exist:factory")
        with pytest.raises(ConfigurationError):
            load_provider_factory("fleet_deployer.simulator:ACCOUNT_ID")

    def test_provider_factory_is_resolved(self):
        from fleet_deployer.simulator import SimulatedCloud
        assert load_provider_factory("fleet_deployer.simulator:SimulatedCloud") is SimulatedCloud


class TestMain:
    """End-to-end command runs."""

    def test_simulated_deploy_prints_result(self, manifest_path, capsys):
        main(["--log-level", "warning", "deploy", "--manifest", manifest_path, "--simulate", "--slack-off",
              "--polling-interval", "0"])

        result = json.loads(capsys.readouterr().out)
        assert result["success"] is True
        assert result["created"] == {"hello-dev": ["hello-dev_useast1-v000"]}

    def test_simulated_delete(self, manifest_path, capsys):
        main(["delete", "--manifest", manifest_path, "--simulate", "--slack-off"])

        result = json.loads(capsys.readouterr().out)
        assert result["success"] is True
        assert result["deleted"] == {}

    def test_missing_provider_exits_with_error(self, manifest_path):
        with pytest.raises(SystemExit) as e:
            main(["deploy", "--manifest", manifest_path, "--slack-off"])
        assert e.value.code == 1

    def test_invalid_manifest_exits_with_error(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("name: hello\nstacks: []\n")
        with pytest.raises(SystemExit) as e:
            main(["deploy", "--manifest", str(path), "--simulate"])
        assert e.value.code == 1
