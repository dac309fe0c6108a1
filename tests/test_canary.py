import pytest

from fleet_deployer import naming
from fleet_deployer.models import Capacity, DeploymentMode, PipelineResult
from fleet_deployer.pipeline import DEPLOY_PHASES, Pipeline
from fleet_deployer.simulator import FailureInjector, SimulatedCloud

from conftest import HEALTHCHECK_TG, build_app

REGION = "us-east-1"
PRODUCTION = "hello-dev_useast1-v002"
FIRST_CANARY = "hello-dev_useast1-v003"


def canary_app():
    return build_app(mode=DeploymentMode.CANARY, region_kwargs={"target_groups": (HEALTHCHECK_TG,)})


def target_group(client, name):
    return next(g for g in client.target_groups.values() if g.name == name)


def security_group(client, name):
    return next((g for g in client.security_groups.values() if g.name == name), None)


class FailLbGroupDeletion(FailureInjector):
    """The canary EC2 group is deleted first; the two calls after it fail"""

    def should_fail(self, operation):
        if operation != "delete_security_group":
            return False
        self.attempts[operation] = self.attempts.get(operation, 0) + 1
        return self.attempts[operation] in (2, 3)


@pytest.fixture
def production(cloud, seed_group):
    client = cloud.client(REGION)
    seed_group(client, 2, Capacity(4, 8, 4))
    return client


class TestCanaryStart:
    """Starting a canary next to the production version."""

    @pytest.mark.asyncio
    async def test_start_creates_canary_infrastructure(self, cloud, production, run_config):
        result = await Pipeline(canary_app(), cloud).deploy(run_config())

        assert result.success is True
        assert result.created == {"hello-dev": [FIRST_CANARY]}
        assert result.deleted == {}

        canary = production.autoscaling_groups[FIRST_CANARY]
        assert canary.capacity == Capacity(1, 1, 1)
        assert canary.tags[naming.DEPLOYMENT_TAG_KEY] == "canary"

        canary_tg = target_group(production, "hello-dev-canary-v001")
        original_tg = target_group(production, HEALTHCHECK_TG)
        assert set(canary.target_group_arns) == {canary_tg.arn, original_tg.arn}

        lb = next(iter(production.load_balancers.values()))
        assert lb.name == "hello-dev-useast1-canary"
        assert lb.listener_target_group == canary_tg.arn

        ec2_sg = security_group(production, "hello-dev-useast1-canary")
        lb_sg = security_group(production, "hello-dev-useast1-lb-canary")
        assert lb.security_groups == [lb_sg.group_id]
        assert [r.source_group for r in ec2_sg.ingress] == [lb_sg.group_id]
        assert ec2_sg.group_id in canary.launch_template.security_groups

        # production is left alone
        assert production.autoscaling_groups[PRODUCTION].capacity == Capacity(4, 8, 4)

    @pytest.mark.asyncio
    async def test_force_manifest_capacity_applies_to_canary(self, cloud, production, run_config):
        result = await Pipeline(canary_app(), cloud).deploy(run_config(force_manifest_capacity=True))

        assert result.success is True
        assert production.autoscaling_groups[FIRST_CANARY].capacity == Capacity(2, 4, 2)

    @pytest.mark.asyncio
    async def test_second_canary_replaces_first(self, cloud, production, run_config):
        assert (await Pipeline(canary_app(), cloud).deploy(run_config())).success
        first_tg = target_group(production, "hello-dev-canary-v001")

        result = await Pipeline(canary_app(), cloud).deploy(run_config())

        assert result.success is True
        assert result.deleted == {"hello-dev": [FIRST_CANARY]}
        second_tg = target_group(production, "hello-dev-canary-v002")
        lb = next(iter(production.load_balancers.values()))
        assert lb.listener_target_group == second_tg.arn
        assert first_tg.arn in production.deleted_target_groups
        assert len(production.load_balancers) == 1
        assert production.autoscaling_groups[PRODUCTION].capacity == Capacity(4, 8, 4)
        assert production.autoscaling_groups["hello-dev_useast1-v004"].tags[naming.DEPLOYMENT_TAG_KEY] == "canary"

    @pytest.mark.asyncio
    async def test_existing_canary_target_group_is_reused(self, cloud, production, run_config):
        existing = production.add_target_group("hello-dev-canary-v001")

        result = await Pipeline(canary_app(), cloud).deploy(run_config())

        assert result.success is True
        assert [g.name for g in production.target_groups.values()].count("hello-dev-canary-v001") == 1
        assert existing.arn in production.autoscaling_groups[FIRST_CANARY].target_group_arns
        lb = next(iter(production.load_balancers.values()))
        assert lb.listener_target_group == existing.arn

    @pytest.mark.asyncio
    async def test_load_balancer_created_meanwhile_is_looked_up(self, cloud, production, run_config, monkeypatch):
        existing = production.add_load_balancer("hello-dev-useast1-canary")
        describe = production.describe_load_balancers
        lookups = []

        async def not_visible_yet():
            lookups.append(1)
            if len(lookups) == 1:
                return []
            return await describe()

        monkeypatch.setattr(production, "describe_load_balancers", not_visible_yet)

        result = await Pipeline(canary_app(), cloud).deploy(run_config())

        assert result.success is True
        assert len(production.calls_to("create_load_balancer")) == 1
        assert list(production.load_balancers) == [existing.arn]
        canary_tg = target_group(production, "hello-dev-canary-v001")
        assert production.load_balancers[existing.arn].listener_target_group == canary_tg.arn

    @pytest.mark.asyncio
    async def test_health_is_checked_again_after_joining_original_target_groups(self, cloud, production, run_config):
        pipeline = Pipeline(canary_app(), cloud)
        config = run_config()
        strategies = pipeline.build_strategies(config)
        assert await pipeline.run_phases(DEPLOY_PHASES[:3], strategies, config, PipelineResult(success=False))
        before = len(production.calls_to("describe_target_health"))

        assert await pipeline.run_phases(["finish_additional_work"], strategies, config, PipelineResult(success=False))

        assert len(production.calls_to("describe_target_health")) == before + 1
        assert production.calls_to("attach_target_groups")
        assert strategies[0].deployer.regions[REGION].healthy is True

    @pytest.mark.asyncio
    async def test_complete_without_canary_is_rejected(self, cloud, production, run_config):
        result = await Pipeline(canary_app(), cloud).deploy(run_config(complete_canary=True))

        assert result.success is False
        assert result.failed_phase == "deploy"
        assert "before starting" in result.error
        assert production.calls_to("create_autoscaling_group") == []


class TestCanaryCompletion:
    """Promoting the canary to production."""

    @pytest.mark.asyncio
    async def test_complete_promotes_canary_and_tears_down(self, cloud, production, run_config):
        assert (await Pipeline(canary_app(), cloud).deploy(run_config())).success
        ec2_sg = security_group(production, "hello-dev-useast1-canary").group_id
        lb_sg = security_group(production, "hello-dev-useast1-lb-canary").group_id
        canary_tg = target_group(production, "hello-dev-canary-v001").arn

        result = await Pipeline(canary_app(), cloud).deploy(run_config(complete_canary=True))

        assert result.success is True
        assert result.deleted == {"hello-dev": [PRODUCTION]}
        promoted = production.autoscaling_groups[FIRST_CANARY]
        assert promoted.capacity == Capacity(4, 8, 4)
        assert naming.DEPLOYMENT_TAG_KEY not in promoted.tags
        assert promoted.target_group_arns == [target_group(production, HEALTHCHECK_TG).arn]
        assert ec2_sg not in promoted.launch_template.security_groups
        assert promoted.launch_template.version == 2
        for instance in promoted.instances:
            for interface in instance.network_interfaces:
                assert ec2_sg not in interface.security_groups

        assert production.load_balancers == {}
        assert set(production.deleted_security_groups) == {ec2_sg, lb_sg}
        assert canary_tg in production.deleted_target_groups
        assert PRODUCTION not in production.autoscaling_groups

    @pytest.mark.asyncio
    async def test_complete_waits_for_load_balancer_deletion(self, run_config, seed_group):
        cloud = SimulatedCloud(lb_deletion_polls=3)
        client = cloud.client(REGION)
        seed_group(client, 2, Capacity(2, 2, 2))
        assert (await Pipeline(canary_app(), cloud).deploy(run_config())).success

        result = await Pipeline(canary_app(), cloud).deploy(run_config(complete_canary=True))

        assert result.success is True
        assert len(client.calls_to("describe_load_balancer")) == 3
        assert client.load_balancers == {}

    @pytest.mark.asyncio
    async def test_lb_security_group_deletion_is_retried(self, run_config, seed_group):
        cloud = SimulatedCloud()
        client = cloud.client(REGION)
        seed_group(client, 2, Capacity(2, 2, 2))
        assert (await Pipeline(canary_app(), cloud).deploy(run_config())).success
        lb_sg = security_group(client, "hello-dev-useast1-lb-canary").group_id
        cloud.failure_injector = FailLbGroupDeletion()

        result = await Pipeline(canary_app(), cloud).deploy(run_config(complete_canary=True))

        assert result.success is True
        assert lb_sg in client.deleted_security_groups
        assert len(client.calls_to("delete_security_group")) == 4

    @pytest.mark.asyncio
    async def test_gather_metrics_and_api_test_skipped_until_complete(self, cloud, production, run_config):
        called = []

        def tester(template):
            called.append(template)

        app = canary_app()
        app.stacks[0].api_test_enabled = True
        app.stacks[0].api_test_template = "missing"

        result = await Pipeline(app, cloud, api_tester_factory=tester).deploy(run_config())

        assert result.success is True
        assert called == []
