import pytest

from fleet_deployer.models import AppConfig, Capacity, DeploymentMode, RegionConfig, RunConfig, Stack
from fleet_deployer.simulator import SimulatedCloud

APP = "hello"
STACK = "hello-dev"
HEALTHCHECK_TG = "hello-dev-tg"


def build_region(name, **kwargs):
    fields = dict(
        region=name,
        instance_type="t3.micro",
        ami_id="ami-test",
        vpc="vpc-sim",
        healthcheck_target_group=HEALTHCHECK_TG,
        security_groups=("hello-default",),
    )
    fields.update(kwargs)
    return RegionConfig(**fields)


def build_app(mode=DeploymentMode.BLUE_GREEN, regions=("us-east-1",), capacity=Capacity(2, 4, 2), region_kwargs=None,
              **stack_kwargs):
    stack = Stack(
        stack=STACK,
        env="dev",
        replacement_type=mode,
        capacity=capacity,
        regions=[build_region(r, **(region_kwargs or {})) for r in regions],
        **stack_kwargs,
    )
    return AppConfig(name=APP, stacks=[stack])


@pytest.fixture
def run_config():
    """RunConfig factory with every wait set to zero"""
    def build(**kwargs):
        fields = dict(timeout_s=30.0, polling_interval_s=0, retry_base_delay_s=0, retry_step_delay_s=0,
                      settle_delay_s=0)
        fields.update(kwargs)
        return RunConfig(**fields)
    return build


@pytest.fixture
def make_app():
    return build_app


@pytest.fixture
def cloud():
    return SimulatedCloud()


@pytest.fixture
def seed_group():
    """Seed a previous autoscaling group attached to the health check target group"""
    def seed(client, version, capacity, tags=None):
        tg = next((g for g in client.target_groups.values() if g.name == HEALTHCHECK_TG), None)
        if tg is None:
            tg = client.add_target_group(HEALTHCHECK_TG)
        name = f"{APP}-dev_{client.region.replace('-', '')}-v{version:03d}"
        client.add_autoscaling_group(name, capacity, tags=tags, target_group_arns=[tg.arn])
        return name
    return seed
