"""Canary deployments.

Starting a canary creates a small group behind a copy of the health-check
target group, reachable through a dedicated canary load balancer. Completing
it promotes that group: the canary security group, tag and target group are
removed from it, it is resized to full capacity, and the canary
infrastructure is torn down.
"""
import asyncio
from dataclasses import dataclass, field
from typing import Optional

from . import naming
from .deployer import replace_target_groups
from .errors import AlreadyExistsError, ConfigurationError, DeploymentError, ProviderError, ResourceNotFoundError
from .models import IngressRule, Step
from .polling import retry_call, wait_until
from .strategy import DeployManager

LB_SECURITY_GROUP_DELETE_ATTEMPTS = 5
ANYWHERE = "0.0.0.0/0"


@dataclass
class CanaryRegionState:
    prev_target_groups: list = field(default_factory=list)  # original target group names
    target_group_arns: list = field(default_factory=list)  # of the latest group
    load_balancer_arn: str = ""
    lb_security_group: Optional[str] = None


class Canary(DeployManager):
    def __init__(self, deployer):
        super().__init__(deployer)
        self.canary = {r.region: CanaryRegionState() for r in deployer.stack.regions}

    @property
    def app_name(self):
        return self.deployer.app.name

    @property
    def env(self):
        return self.deployer.stack.env

    def validate_canary_deployment(self, config, region):
        if config.complete_canary and not self.deployer.regions[region].canary_flag:
            raise ConfigurationError(f"you cannot complete canary deployment before starting one: {region}")

    async def get_asg_target_groups(self, asg, region):
        arns = []
        if asg:
            group = await self.deployer.client(region).describe_autoscaling_group(asg)
            if group is not None:
                arns = list(group.target_group_arns)
        if arns:
            self.logger.debug(f"Found target groups for canary deployment {asg}: {len(arns)}")
        self.canary[region].target_group_arns = arns
        return arns

    def select_target_group_for_copy(self, region, canary_version):
        if canary_version == 0:
            return region.healthcheck_target_group
        return naming.canary_target_group_name(self.app_name, self.env, canary_version)

    # canary load balancer and security groups

    async def find_canary_load_balancer(self, region):
        name = naming.canary_load_balancer_name(self.app_name, self.env, region.region)
        for lb in await self.deployer.client(region.region).describe_load_balancers():
            if lb.name == name:
                return lb
        return None

    async def _authorize(self, method, group_id, rule):
        try:
            await method(group_id, rule)
        except AlreadyExistsError as e:
            self.logger.debug(f"rule already exists: {e}")

    async def create_canary_lb_security_group(self, target_group, region):
        client = self.deployer.client(region.region)
        name = naming.canary_lb_security_group_name(self.app_name, self.env, region.region)
        try:
            group_id = await client.create_security_group(name, target_group.vpc_id)
        except AlreadyExistsError:
            self.logger.debug(f"Security group is already created: {name}")
            group_id = await client.get_security_group(name)

        await self._authorize(client.authorize_ingress, group_id,
                              IngressRule("tcp", 80, 80, cidr=ANYWHERE, description="inbound from internet"))
        await self._authorize(client.authorize_egress, group_id,
                              IngressRule("-1", -1, -1, cidr=ANYWHERE, description="outbound to internet"))
        return group_id

    async def get_canary_lb_security_group(self, region):
        name = naming.canary_lb_security_group_name(self.app_name, self.env, region.region)
        try:
            group_id = await self.deployer.client(region.region).get_security_group(name)
        except ResourceNotFoundError as e:
            self.logger.warning(str(e))
            return None
        self.logger.debug(f"Found existing lb security group id: {group_id}")
        return group_id

    async def create_canary_load_balancer(self, region, security_group):
        client = self.deployer.client(region.region)
        name = naming.canary_load_balancer_name(self.app_name, self.env, region.region)
        zones = await client.get_availability_zones(region.vpc, region.availability_zones)
        subnets = await client.get_subnets(region.vpc, region.use_public_subnets, zones)
        try:
            return await client.create_load_balancer(name, subnets, security_group)
        except AlreadyExistsError:
            return await self.find_canary_load_balancer(region)

    async def get_load_balancer_and_security_group_for_canary(self, region, target_group, complete_canary):
        canary_lb = await self.find_canary_load_balancer(region)
        lb_sg = None

        if region.healthcheck_load_balancer or region.target_groups:
            if canary_lb is None:
                if not complete_canary:
                    lb_sg = await self.create_canary_lb_security_group(target_group, region)
                    canary_lb = await self.create_canary_load_balancer(region, lb_sg)
                    self.logger.debug(f"Created a new load balancer for canary: {canary_lb.name}")
            else:
                self.logger.debug(f"Found existing load balancer for canary: {canary_lb.name}")
                lb_sg = await self.get_canary_lb_security_group(region)

            if lb_sg is None and not complete_canary:
                lb_sg = await self.create_canary_lb_security_group(target_group, region)
                self.logger.debug(f"New lb security group is created: {lb_sg}")

        state = self.canary[region.region]
        state.lb_security_group = lb_sg
        if canary_lb is not None:
            state.load_balancer_arn = canary_lb.arn
        return lb_sg, canary_lb

    async def get_ec2_canary_security_group(self, target_group, region, lb_sg, complete_canary):
        """Find or create the security group canary instances run with"""
        client = self.deployer.client(region.region)
        name = naming.canary_security_group_name(self.app_name, self.env, region.region)
        state = self.deployer.regions[region.region]

        if complete_canary:
            state.security_group = await client.get_security_group(name)
            self.logger.debug(f"Found existing security group id: {state.security_group}")
            return

        try:
            group_id = await client.create_security_group(name, target_group.vpc_id)
            await self._authorize(client.authorize_egress, group_id,
                                  IngressRule("-1", -1, -1, cidr=ANYWHERE, description="outbound to internet"))
        except AlreadyExistsError:
            self.logger.debug(f"Security group is already created: {name}")
            group_id = await client.get_security_group(name)

        if lb_sg:
            port = target_group.port
            await self._authorize(client.authorize_ingress, group_id,
                                  IngressRule("tcp", port, port, source_group=lb_sg,
                                              description="Allow access from canary load balancer"))

        state.security_group = group_id
        self.logger.debug(f"Security group for this canary deployment: {group_id}")

    # start and completion

    async def run_canary_deployment(self, config, region, target_group, canary_lb, canary_version):
        client = self.deployer.client(region.region)
        name = naming.canary_target_group_name(self.app_name, self.env, canary_version + 1)
        self.logger.debug(f"New target group will be created for canary deployment: {name}")

        try:
            canary_tg = await client.create_target_group(target_group, name)
        except AlreadyExistsError:
            canary_tg = await client.describe_target_group(name)

        if canary_lb is not None:
            await client.set_listener_target_group(canary_lb.arn, canary_tg.arn)
            self.logger.debug(f"Attached target group to load balancer: {canary_lb.name}")

        # the new group joins these once it is healthy behind the canary target group
        self.canary[region.region].prev_target_groups = self.deployer.target_group_names(region)

        changed = replace_target_groups(region, canary_tg.name)
        self.deployer.region_configs[region.region] = changed
        await self.deployer.deploy_region(config, changed, deployment_type=naming.CANARY_MARK)

    async def detach_security_group(self, interfaces, region, exclude):
        client = self.deployer.client(region)
        for interface in interfaces:
            groups = [g for g in interface.security_groups if g != exclude]
            if groups and len(groups) != len(interface.security_groups):
                await client.modify_network_interface(interface.interface_id, groups)
                self.logger.debug(f"Remove security group from eni: {interface.interface_id}")

    async def change_launch_template_version(self, asg, template, region, exclude):
        client = self.deployer.client(region)
        detail = await client.describe_launch_template(template.template_id)
        groups = [g for g in detail.security_groups if g != exclude]
        new = await client.create_launch_template_version(detail, groups)
        self.logger.debug(f"Created new version of launch template: {new.template_id} - version {new.version}")
        await client.update_autoscaling_launch_template(asg, new)

    async def complete_canary_deployment(self, config, region, latest_asg):
        client = self.deployer.client(region.region)
        state = self.deployer.regions[region.region]
        group = await self.deployer.describe_autoscaling_group(latest_asg, region.region)

        instances = await client.describe_instances([i.instance_id for i in group.instances])
        interfaces = [ni for instance in instances for ni in instance.network_interfaces]
        await self.detach_security_group(interfaces, region.region, state.security_group)

        await client.delete_tag(latest_asg, naming.DEPLOYMENT_TAG_KEY)
        self.logger.debug("Remove canary tag from autoscaling group")

        canary_arns = [a for a in group.target_group_arns if naming.is_canary_target_group_arn(a, region.region)]
        if canary_arns:
            await client.detach_target_groups(latest_asg, canary_arns)
            self.logger.debug("Remove canary target group from autoscaling group")

        await self.change_launch_template_version(latest_asg, group.launch_template, region.region,
                                                  state.security_group)

        capacity = self.deployer.decide_capacity(config, state)
        state.asg_name = latest_asg
        self.logger.debug(f"Resizing latest autoscaling group: {capacity}")
        await self.deployer.notify(f"[Canary complete] Modifying the size of autoscaling group: {latest_asg}")
        await self.deployer.resize(config, region.region, latest_asg, capacity)

    async def attach_to_original_target_groups(self, config):
        for region in self.deployer.selected_regions(config):
            names = self.canary[region.region].prev_target_groups
            if not names:
                continue
            client = self.deployer.client(region.region)
            state = self.deployer.regions[region.region]
            arns = await client.get_target_group_arns(names)
            self.logger.debug(f"Attach autoscaling group to original target groups: {state.asg_name}")
            await client.attach_target_groups(state.asg_name, arns)
            # health is checked again against the original target groups
            state.healthy = False
        self.logger.debug("Finish attaching autoscaling group to original target groups")

    # teardown

    async def delete_load_balancer(self, region):
        arn = self.canary[region].load_balancer_arn
        if not arn:
            self.logger.debug("No load balancer to delete")
            return
        await self.deployer.client(region).delete_load_balancer(arn)
        self.logger.debug(f"Delete load balancer: {arn}")

    async def load_balancer_deletion_checking(self, config, region):
        arn = self.canary[region].load_balancer_arn
        if not arn:
            return

        async def gone():
            return await self.deployer.client(region).describe_load_balancer(arn) is None

        await wait_until(gone, config, f"deletion of canary load balancer in {region}")
        self.logger.debug(f"Canary load balancer is deleted: {arn}")

    async def delete_promoted_canary_target_groups(self, region):
        """Canary target groups the completed group was detached from, no longer behind any listener"""
        client = self.deployer.client(region)
        for arn in self.canary[region].target_group_arns:
            if not naming.is_canary_target_group_arn(arn, region):
                continue
            try:
                await client.delete_target_group(arn)
            except ResourceNotFoundError:
                self.logger.debug(f"Target group is already deleted: {arn}")
                continue
            self.logger.debug(f"Delete canary target group: {arn}")

    async def delete_ec2_ingress_rules(self, region):
        group_id = self.deployer.regions[region].security_group
        if not group_id:
            self.logger.debug("No EC2 security group to delete")
            return

        client = self.deployer.client(region)
        details = await client.describe_security_groups([group_id])
        if len(details) != 1:
            raise DeploymentError(f"delete ec2 ingress error because more than one or no security group "
                                  f"detected: {len(details)}")
        for rule in list(details[0].ingress):
            if not rule.source_group:
                continue
            try:
                await client.revoke_ingress(group_id, rule)
            except ProviderError as e:
                self.logger.warning(str(e))
        self.logger.debug(f"Detach lb security group from EC2 security group: {group_id}")

    async def delete_ec2_security_group(self, region):
        group_id = self.deployer.regions[region].security_group
        if not group_id:
            self.logger.debug("No EC2 security group to delete")
            return
        await self.deployer.client(region).delete_security_group(group_id)
        self.logger.debug(f"Delete canary EC2 security group: {group_id}")

    async def delete_lb_security_group(self, config, region):
        group_id = self.canary[region].lb_security_group
        if not group_id:
            self.logger.debug("No lb security group to delete")
            return

        self.logger.debug(f"Wait {config.settle_delay_s}s until load balancer is successfully terminated")
        await asyncio.sleep(config.settle_delay_s)

        client = self.deployer.client(region)
        await retry_call(
            lambda: client.delete_security_group(group_id),
            LB_SECURITY_GROUP_DELETE_ATTEMPTS,
            config.retry_base_delay_s,
            config.retry_step_delay_s,
            f"deleting lb security group {group_id}",
        )
        self.logger.debug(f"Delete load balancer security group: {group_id}")

    async def clean_previous_canary_resources(self, config, region):
        client = self.deployer.client(region)
        for asg in self.deployer.clean_targets(region):
            await self.deployer.zero_out(config, region, asg)

            arns = self.deployer.regions[region].prev_target_group_arns.get(asg, [])
            canary_arns = [a for a in arns if naming.is_canary_target_group_arn(a, region)]
            if canary_arns:
                await client.detach_target_groups(asg, canary_arns)
            for arn in canary_arns:
                self.logger.debug(f"Try to delete target group: {arn}")
                await client.delete_target_group(arn)

        if config.complete_canary:
            self.logger.debug("Start to delete load balancer and security group for canary")
            await self.delete_load_balancer(region)
            await self.load_balancer_deletion_checking(config, region)
            await self.delete_promoted_canary_target_groups(region)
            await self.delete_ec2_ingress_rules(region)
            await self.delete_ec2_security_group(region)
            await self.delete_lb_security_group(config, region)

    # phases

    async def deploy(self, config):
        if not self.can_run(Step.DEPLOY):
            return
        self.logger.info(f"Deploy mode is {self.deployer.mode.value}")

        for region in self.deployer.selected_regions(config):
            self.validate_canary_deployment(config, region.region)

            latest = self.deployer.regions[region.region].latest_asg
            arns = await self.get_asg_target_groups(latest, region.region)
            canary_version = naming.check_canary_version(arns, region.region)
            self.logger.debug(f"Current canary version: {canary_version}")

            selected = self.select_target_group_for_copy(region, canary_version)
            if not selected:
                raise ConfigurationError(f"canary deployment needs a health check target group: {region.region}")
            self.logger.debug(f"Selected target group to copy: {selected}")

            target_group = await self.deployer.client(region.region).describe_target_group(selected)
            if target_group is None:
                raise DeploymentError(f"target group details not found: {selected}")

            lb_sg, canary_lb = await self.get_load_balancer_and_security_group_for_canary(
                region, target_group, config.complete_canary)
            await self.get_ec2_canary_security_group(target_group, region, lb_sg, config.complete_canary)

            if config.complete_canary:
                await self.complete_canary_deployment(config, region, latest)
            else:
                await self.run_canary_deployment(config, region, target_group, canary_lb, canary_version)

        self.done(Step.DEPLOY)

    async def health_checking(self, config):
        if not self.can_run(Step.HEALTH_CHECK):
            return
        await self.deployer.wait_healthy(config)
        self.done(Step.HEALTH_CHECK)

    async def finish_additional_work(self, config):
        if not self.can_run(Step.ADDITIONAL_WORK):
            return
        if config.complete_canary:
            self.done(Step.ADDITIONAL_WORK)
            return

        if self.deployer.in_scope(config):
            if any(s.prev_target_groups for s in self.canary.values()):
                await self.attach_to_original_target_groups(config)
                await self.deployer.wait_healthy(config)
            await self.deployer.do_common_additional_work(config)

        self.logger.debug("Finish additional works")
        self.done(Step.ADDITIONAL_WORK)

    async def trigger_lifecycle_callbacks(self, config):
        if not self.can_run(Step.TRIGGER_LIFECYCLE_CALLBACK):
            return
        if config.complete_canary:
            self.done(Step.TRIGGER_LIFECYCLE_CALLBACK)
            return
        await super().trigger_lifecycle_callbacks(config)

    async def clean_previous_version(self, config):
        if not self.can_run(Step.CLEAN_PREVIOUS_VERSION):
            return
        self.logger.debug(f"Delete mode is {self.deployer.mode.value}")

        regions = self.deployer.selected_regions(config)
        has_previous = any(self.deployer.clean_targets(r.region) for r in regions)
        if not has_previous and not config.complete_canary:
            self.logger.debug("canary is being used and there is no resources to delete")
        elif self.deployer.in_scope(config):
            self.logger.debug("Start to clean resources from previous canary deployment")
            for region in regions:
                await self.clean_previous_canary_resources(config, region.region)

        self.done(Step.CLEAN_PREVIOUS_VERSION)

    async def gather_metrics(self, config):
        if not config.complete_canary and self.can_run(Step.GATHER_METRICS):
            self.logger.debug("Skip gathering metrics because canary is now applied")
            self.done(Step.GATHER_METRICS)
            return
        await super().gather_metrics(config)

    async def run_api_test(self, config):
        if not config.complete_canary and self.can_run(Step.RUN_API_TEST):
            self.logger.debug("Skip API test because canary is now applied")
            self.done(Step.RUN_API_TEST)
            return
        await super().run_api_test(config)
