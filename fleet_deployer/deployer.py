import dataclasses

from . import naming
from .api_test import ApiTester
from .capacity import decide_capacity, next_termination_target, shrink_capacity, termination_delay_count
from .collector import MetricsCollector
from .errors import ConfigurationError, DeploymentError, ProviderError
from .logger import get_logger
from .models import Capacity, DeploymentMode, RegionState, Step, StepStatus
from .notifier import Notifier
from .polling import retry_call, wait_until

RESIZE_ATTEMPTS = 3
ZERO_CAPACITY = Capacity(0, 0, 0)
ROLLING_UPDATE_MARK = "rolling-update"


def is_empty_group(group):
    return group.capacity.desired == 0 or len(group.instances) == 0


class Deployer:
    """Per-stack deployment state and the primitives every strategy is built from.

    ``clients`` maps region name to a ``CloudClient``. Region state lives in one
    ``RegionState`` record per region and is only touched by this deployer.
    """

    def __init__(self, app, stack, clients, notifier=None, collector=None, api_tester_factory=None):
        self.app = app
        self.stack = stack
        self.mode = stack.replacement_type
        self.clients = clients
        self.notifier = notifier if notifier else Notifier()
        self.collector = collector if collector else MetricsCollector(enabled=False)
        self.api_tester_factory = api_tester_factory if api_tester_factory else ApiTester
        self.step_status = StepStatus()
        self.region_configs = {r.region: r for r in stack.regions}
        self.regions = {r.region: RegionState(region=r.region) for r in stack.regions}
        self.logger = get_logger(f"deployer.{stack.stack}")

    def get_stack_name(self):
        return self.stack.stack

    def skip_deploy_step(self):
        """Mark the create-side phases done so the cleanup phases can run alone"""
        self.step_status.mark(Step.DEPLOY)
        self.step_status.mark(Step.HEALTH_CHECK)
        self.step_status.mark(Step.ADDITIONAL_WORK)

    def selected_regions(self, config):
        ret = []
        for region in self.stack.regions:
            if not config.region_selected(region.region):
                self.logger.debug(f"This region is skipped by user: {region.region}")
                continue
            ret.append(self.region_configs[region.region])
        return ret

    def in_scope(self, config):
        return not config.region or config.region in self.region_configs

    def client(self, region):
        try:
            return self.clients[region]
        except KeyError:
            raise DeploymentError(f"no provider client is configured for region {region}")

    def prefix(self, region):
        return naming.build_prefix(self.app.name, self.stack.env, region)

    async def notify(self, message):
        await self.notifier.send_simple_message(message)

    async def _record_status(self, asg, status, fields=None):
        try:
            await self.collector.update_status(asg, status, fields)
        except Exception as e:
            self.logger.error(f"Update status error, {e}: {asg}")

    # check-previous

    async def check_previous(self, config):
        """Record every existing group of each region as a previous version"""
        for region in self.selected_regions(config):
            state = self.regions[region.region]
            prefix = self.prefix(region.region)
            self.logger.debug(f"Prefix name: {prefix}")

            groups = await self.client(region.region).list_autoscaling_groups(prefix)
            groups = [g for g in groups if g.name.startswith(prefix + "-")]
            self.logger.debug(f"Previous autoscaling group count: {len(groups)}")

            prev_asgs, prev_instances, prev_versions = [], [], []
            prev_capacity = None
            latest = None
            latest_serving = None
            for group in groups:
                prev_versions.append(naming.parse_version(group.name))

                deployment_type = group.tags.get(naming.DEPLOYMENT_TAG_KEY, "").lower()
                is_canary = deployment_type == naming.CANARY_MARK
                if deployment_type == ROLLING_UPDATE_MARK:
                    raise DeploymentError(f"cannot deploy because rolling update is being processed now: {group.name}")
                if is_canary:
                    state.canary_flag = True

                if self.mode != DeploymentMode.CANARY or is_canary or config.complete_canary:
                    prev_asgs.append(group.name)
                    prev_instances.extend(i.instance_id for i in group.instances)
                    state.prev_target_group_arns[group.name] = list(group.target_group_arns)

                if latest is None or group.created_time > latest.created_time:
                    latest = group
                if not is_canary and group.capacity.desired > 0:
                    if latest_serving is None or group.created_time > latest_serving.created_time:
                        latest_serving = group

            # a canary group is running at canary size, the serving group holds the real capacity
            if latest_serving is not None:
                prev_capacity = latest_serving.capacity

            if prev_asgs:
                self.logger.info(f"Previous versions: {' | '.join(prev_asgs)}")

            state.prev_asgs = prev_asgs
            state.prev_instances = prev_instances
            state.prev_versions = prev_versions
            state.prev_capacity = prev_capacity
            if latest is not None:
                state.latest_asg = latest.name
                self.logger.info(f"Latest autoscaling group version: {latest.name}")

        self.step_status.mark(Step.CHECK_PREVIOUS)

    # deploy

    def generate_tags(self, asg, region, config, deployment_type=None):
        tags = {}
        for kv in self.app.tags:
            k, v = kv.split("=", 1)
            tags[k] = v
        tags["Name"] = asg
        tags["stack"] = f"{self.stack.stack}_{region.replace('-', '')}"
        tags["app"] = self.app.name
        for kv in self.stack.tags:
            k, v = kv.split("=", 1)
            tags[k] = v

        for kv in filter(None, (s.strip() for s in config.extra_tags.split(","))):
            if "=" not in kv:
                self.logger.warning("extra-tags usage: --extra-tags=key1=value1,key2=value2...")
                continue
            k, v = kv.split("=", 1)
            tags[k] = v

        if deployment_type:
            tags[naming.DEPLOYMENT_TAG_KEY] = deployment_type
        return tags

    @staticmethod
    def target_group_names(region):
        names = list(region.target_groups)
        if region.healthcheck_target_group and region.healthcheck_target_group not in names:
            names.append(region.healthcheck_target_group)
        return names

    def decide_capacity(self, config, state):
        return decide_capacity(
            config.force_manifest_capacity,
            config.complete_canary,
            self.mode,
            len(state.prev_asgs),
            self.stack.capacity,
            state.prev_capacity,
        )

    async def deploy_region(self, config, region, capacity=None, deployment_type=None):
        """Create the next launch template and autoscaling group version in one region"""
        state = self.regions[region.region]
        client = self.client(region.region)
        prefix = self.prefix(region.region)

        version = naming.next_version(state.prev_versions)
        self.logger.info(f"Current version: {version}")

        new_asg = naming.asg_name(prefix, version)
        template_name = naming.launch_template_name(new_asg)
        self.logger.debug(f"New autoscaling group: {new_asg}, launch template: {template_name}")

        security_groups = await client.get_security_group_ids(region.vpc, region.security_groups)
        if state.security_group:
            security_groups.append(state.security_group)
            self.logger.debug(f"additional security group applied to {new_asg}: {state.security_group}")

        instance_type = region.instance_type
        if config.override_instance_type:
            instance_type = config.override_instance_type
            self.logger.debug(f"Instance type is overridden with {instance_type}")

        template = await client.create_launch_template(
            template_name,
            config.ami or region.ami_id,
            instance_type,
            ssh_key=region.ssh_key,
            iam_instance_profile=self.stack.iam_instance_profile,
            ebs_optimized=self.stack.ebs_optimized,
            security_groups=security_groups,
            detailed_monitoring=region.detailed_monitoring_enabled,
        )

        load_balancers = list(region.load_balancers)
        if region.healthcheck_load_balancer and region.healthcheck_load_balancer not in load_balancers:
            load_balancers.append(region.healthcheck_load_balancer)

        target_groups = self.target_group_names(region)
        target_group_arns = await client.get_target_group_arns(target_groups) if target_groups else []
        if not target_group_arns:
            self.logger.debug(f"target group does not exist: {new_asg}")

        zones = await client.get_availability_zones(region.vpc, region.availability_zones)
        subnets = await client.get_subnets(region.vpc, region.use_public_subnets, zones)
        tags = self.generate_tags(new_asg, region.region, config, deployment_type)

        if capacity is None:
            capacity = self.decide_capacity(config, state)
        self.logger.info(f"Applied instance capacity - {capacity}")

        await client.create_autoscaling_group(
            new_asg,
            template.name,
            capacity,
            target_group_arns=target_group_arns,
            load_balancers=load_balancers,
            availability_zones=zones,
            subnets=subnets,
            termination_policies=region.termination_policies,
            tags=tags,
        )

        if not config.disable_metrics and self.collector.enabled:
            fields = {"release-notes": config.release_notes} if config.release_notes else {}
            try:
                await self.collector.stamp_deployment(self.stack, config, tags, new_asg, "creating", fields)
            except Exception as e:
                self.logger.error(f"Stamping deployment failed for {new_asg}: {e}")

        state.asg_name = new_asg
        state.applied_capacity = capacity
        state.healthy = False
        await self.notify(f"New autoscaling group is created: {new_asg} ({region.region})")
        return new_asg

    # resize

    async def resize(self, config, region, asg, capacity):
        """Apply ``capacity`` to ``asg``, retrying transient provider failures"""
        client = self.client(region)
        self.logger.info(f"Modifying the size of autoscaling group to {capacity}: {asg}({self.stack.stack})")
        await self.notify(f"Modifying the size of autoscaling group to {capacity.desired}: {asg}/{self.stack.stack}")

        await retry_call(
            lambda: client.update_autoscaling_group_size(asg, capacity),
            RESIZE_ATTEMPTS,
            config.retry_base_delay_s,
            config.retry_step_delay_s,
            f"resizing {asg}",
        )

        state = self.regions[region]
        if asg == state.asg_name:
            state.applied_capacity = capacity
            state.healthy = False

    async def zero_out(self, config, region, asg):
        self.logger.debug(f"[Resizing to 0] target autoscaling group: {asg}")
        await self.resize(config, region, asg, ZERO_CAPACITY)

    async def describe_autoscaling_group(self, asg, region):
        group = await self.client(region).describe_autoscaling_group(asg)
        if group is None:
            raise DeploymentError(f"no autoscaling group information retrieved: {asg}")
        return group

    # health checking

    def valid_host_count(self, hosts):
        for host in hosts:
            self.logger.debug(f"{host.instance_id} | {host.lifecycle_state} | {host.target_status} | "
                              f"{host.health_status} | {host.valid}")
        return len([h for h in hosts if h.valid])

    async def poll_health(self, region):
        """One health query for the region's current group, True once enough hosts are valid"""
        state = self.regions[region.region]
        if not region.healthcheck_target_group and not region.healthcheck_load_balancer:
            self.logger.info("health check skipped because neither target group nor load balancer is specified")
            return True

        client = self.client(region.region)
        group = await client.describe_autoscaling_group(state.asg_name)
        if group is None:
            raise DeploymentError(f"no autoscaling found for {state.asg_name}")

        if region.healthcheck_target_group:
            arn = region.healthcheck_target_group
            if not naming.is_target_group_arn(arn, region.region):
                arn = (await client.get_target_group_arns([arn]))[0]
            self.logger.debug(f"[Checking healthy host count] Target group: {arn}")
            hosts = await client.describe_target_health(group, arn)
        else:
            self.logger.debug(f"[Checking healthy host count] Load balancer: {region.healthcheck_load_balancer}")
            hosts = await client.describe_load_balancer_health(group, region.healthcheck_load_balancer)

        valid = self.valid_host_count(hosts)
        threshold = state.applied_capacity.desired if state.applied_capacity else self.stack.capacity.desired
        if valid >= threshold:
            self.logger.info(f"Healthy count for {state.asg_name}: {valid}/{threshold}")
            await self.notify(f"All instances are healthy in {state.asg_name}: {valid}/{threshold}")
            return True

        self.logger.info(f"Healthy count does not meet the requirement({state.asg_name}): {valid}/{threshold}")
        await self.notify(f"Waiting for healthy instances {state.asg_name}: {valid}/{threshold}")
        return False

    async def health_checking(self, config):
        """True once every selected region has reported healthy"""
        for region in self.selected_regions(config):
            state = self.regions[region.region]
            if state.healthy:
                continue
            if await self.poll_health(region):
                state.healthy = True
                if not config.disable_metrics and self.collector.enabled:
                    await self._record_status(state.asg_name, "deployed")
        return all(self.regions[r.region].healthy for r in self.selected_regions(config))

    async def wait_healthy(self, config):
        await wait_until(lambda: self.health_checking(config), config, f"healthy instances of {self.stack.stack}")

    # additional work

    async def do_common_additional_work(self, config):
        """Scaling policies, alarms and scheduled actions for the new group"""
        for region in self.selected_regions(config):
            state = self.regions[region.region]
            client = self.client(region.region)
            self.logger.info(f"Attaching autoscaling policies: {region.region}")

            if not self.stack.autoscaling:
                self.logger.debug("no scaling policy exists")
            else:
                policy_arns = {}
                for policy in self.stack.autoscaling:
                    policy_arns[policy.name] = await client.create_scaling_policy(state.asg_name, policy)
                    self.logger.debug(f"policy arn created: {policy_arns[policy.name]}")

                await client.enable_metrics_collection(state.asg_name)
                await client.create_scaling_alarms(state.asg_name, self.stack.alarms, policy_arns)

            if region.scheduled_actions:
                selected = [a for a in self.app.scheduled_actions if a.name in region.scheduled_actions]
                self.logger.debug(f"selected actions [ {','.join(region.scheduled_actions)} ]")
                await client.create_scheduled_actions(state.asg_name, selected)

    # lifecycle callbacks

    async def trigger_lifecycle_callbacks(self, config):
        commands = self.stack.pre_terminate_commands
        if not commands or (self.mode == DeploymentMode.BLUE_GREEN and self.stack.termination_delay_rate > 0):
            self.logger.debug(f"no need to run lifecycle callbacks in {self.stack.stack}")
            return
        if not self.in_scope(config):
            self.logger.debug(f"region [ {config.region} ] is not in the stack [ {self.stack.stack} ].")
            return

        for region in self.selected_regions(config):
            targets = self.regions[region.region].prev_instances
            if not targets:
                self.logger.debug(f"No previous versions to be deleted: {region.region}")
                await self.notify(f"No previous versions to be deleted: {region.region}")
                continue
            self.logger.debug(f"run lifecycle callbacks before termination: {targets}")
            if not await self.client(region.region).send_command(targets, commands):
                self.logger.warning(f"lifecycle callbacks were not accepted in {region.region}")

    # cleaning

    def clean_targets(self, region):
        """Previous groups of a region that should be removed; never the current group"""
        state = self.regions[region]
        return [asg for asg in state.prev_asgs if asg != state.asg_name]

    async def clean_previous_autoscaling_groups(self, config):
        for region in self.selected_regions(config):
            targets = self.clean_targets(region.region)
            self.logger.info(f"[{region.region}]The number of previous versions to delete is {len(targets)}")
            if not targets:
                self.logger.info(f"No previous versions to be deleted: {region.region}")
                await self.notify(f"No previous versions to be deleted: {region.region}")
                continue

            for asg in targets:
                if self.mode == DeploymentMode.BLUE_GREEN and self.stack.termination_delay_rate > 0:
                    await self.shrink_gradually(config, region.region, asg)
                else:
                    await self.zero_out(config, region.region, asg)

    async def shrink_gradually(self, config, region, asg):
        """Remove instances a slice at a time, waiting for each slice to terminate"""
        group = await self.client(region).describe_autoscaling_group(asg)
        if group is None:
            return
        total = group.capacity.desired
        current = total
        reduce_count = termination_delay_count(total, self.stack.termination_delay_rate)
        while current > 0:
            target = next_termination_target(current, reduce_count)
            self.logger.debug(f"resizing target autoscaling group: {asg}, total: {total}, current: {current}, "
                              f"desired: {target}")
            await self.resize(config, region, asg, Capacity(target, target, target))
            await wait_until(lambda: self.instance_count_at_most(region, asg, target), config,
                             f"termination of instances in {asg}")
            current = target

    async def instance_count_at_most(self, region, asg, count):
        group = await self.client(region).describe_autoscaling_group(asg)
        if group is None:
            return True
        if len(group.instances) > count:
            self.logger.info(f"still terminating, desired: {count}, current: {len(group.instances)}: {asg}")
            await self.notify(f"Still found {len(group.instances) - count} instance to delete: {asg}")
            return False
        return True

    async def reduce_previous_capacity(self, config, region, decrease):
        """Shrink every non-empty previous group by ``decrease``; True when all were already empty"""
        done = True
        for asg in self.clean_targets(region):
            group = await self.client(region).describe_autoscaling_group(asg)
            if group is None or is_empty_group(group):
                continue
            done = False
            self.logger.info(f"[{region}]Previous version: {asg}, decrease count: {decrease}")
            capacity = shrink_capacity(group.capacity, decrease)
            await self.resize(config, region, asg, capacity)
        return done

    async def clear_resources(self, config, region, asg):
        """Delete a drained group with its launch templates"""
        client = self.client(region)
        try:
            await client.delete_autoscaling_group(asg)
            self.logger.debug(f"Autoscaling group is deleted: {asg}")
            await client.delete_launch_templates(asg)
            self.logger.debug(f"Launch templates are deleted in {asg}")
        except ProviderError as e:
            self.logger.error(f"Cleaning {asg} failed: {e}")
            return False

        if not config.disable_metrics:
            await self._record_status(asg, "terminated")
        return True

    async def check_terminating(self, config, region, asg):
        """True once ``asg`` has no instances left and has been deleted"""
        state = self.regions[region]
        if asg in state.drained:
            return True

        group = await self.client(region).describe_autoscaling_group(asg)
        if group is None:
            self.logger.info(f"Autoscaling group is already gone: {asg}")
            state.drained.add(asg)
            return True

        if group.instances:
            self.logger.info(f"still terminating, current: {len(group.instances)}: {asg}")
            await self.notify(f"Still found {len(group.instances)} instance to delete: {asg}")
            return False

        await self.notify(f":+1: All instances are deleted: {asg}")
        if not await self.clear_resources(config, region, asg):
            return False
        state.drained.add(asg)
        return True

    async def clean_checking(self, config):
        """True once every previous group of every selected region is drained and deleted"""
        finished = True
        for region in self.selected_regions(config):
            targets = self.clean_targets(region.region)
            if not targets:
                self.logger.info(f"No target to delete: {region.region}")
                continue

            for asg in targets:
                if await self.check_terminating(config, region.region, asg):
                    self.logger.info(f"Termination finished: {asg}")
                else:
                    finished = False
        return finished

    async def wait_clean(self, config):
        await wait_until(lambda: self.clean_checking(config), config, f"termination of {self.stack.stack}")

    def deleted_groups(self):
        return sorted(asg for state in self.regions.values() for asg in state.drained)

    # metrics

    async def gather_metrics(self, region, asg):
        client = self.client(region)
        target_groups = self.regions[region].prev_target_group_arns.get(asg, [])
        if not target_groups:
            self.logger.warning(f"this autoscaling group does not belong to any target group: {asg}")
            return

        load_balancers = await client.get_load_balancers_for_target_groups(target_groups)
        self.logger.debug(f"start retrieving additional metrics: {asg}")
        metric_data = await self.collector.get_additional_metric(client, asg, target_groups, load_balancers)
        await self.collector.update_statistics(asg, metric_data)
        self.logger.debug(f"finish updating additional metrics: {asg}")

    async def start_gathering_metrics(self, config):
        for region in self.selected_regions(config):
            state = self.regions[region.region]
            self.logger.info(f"[{region.region}]The number of previous autoscaling groups for gathering metrics "
                             f"is {len(state.prev_asgs)}")
            errors = []
            for asg in self.clean_targets(region.region):
                try:
                    await self.gather_metrics(region.region, asg)
                except (ProviderError, DeploymentError) as e:
                    self.logger.error(f"gathering metrics of {asg} failed: {e}")
                    errors.append(e)
            if errors:
                raise DeploymentError("error occurred on gathering metrics")

    # api test

    async def run_api_test(self, config):
        if not self.stack.api_test_enabled:
            self.logger.info(f"API test is disabled for this stack: {self.stack.stack}")
            return None

        template = self.app.api_test_template(self.stack.api_test_template)
        if template is None:
            raise ConfigurationError(f"api test template does not exist: {self.stack.api_test_template}")

        tester = self.api_tester_factory(template)
        results = await tester.run()
        summary = tester.render(results)
        self.logger.info(summary)
        await self.notify(summary)
        return results


def replace_target_groups(region, target_group):
    """Region config whose traffic and health checks go through ``target_group`` only"""
    return dataclasses.replace(region, healthcheck_target_group=target_group, target_groups=(target_group,))
