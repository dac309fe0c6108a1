"""In-memory cloud used by the test-suite and ``--simulate`` runs.

Instances come up and go away in a configurable number of polls, and any
provider operation can be made to fail a given number of times.
"""
import asyncio
import copy
import itertools

from .errors import AlreadyExistsError, ProviderError, ResourceNotFoundError
from .logger import get_logger
from .models import (AutoscalingGroup, HealthcheckHost, Instance, LaunchTemplate, LoadBalancer,
                     NetworkInterface, SecurityGroup, TargetGroup)
from .provider import CloudClient

ACCOUNT_ID = "123456789012"


class FailureInjector:
    """Fail the first N calls of an operation; ``fail_attempts`` maps operation name to N"""

    def __init__(self, fail_attempts=None, delay=0):
        self.fail_map = fail_attempts or {}
        self.delay = delay
        self.attempts = {}

    def delay_seconds(self):
        return self.delay

    def should_fail(self, operation):
        self.attempts[operation] = self.attempts.get(operation, 0) + 1
        return self.attempts[operation] <= self.fail_map.get(operation, 0)


class SimulatedCloud:
    """A set of regional simulated clients sharing id counters and failure settings.

    ``warmup_polls``: target-health polls an instance needs before it reports healthy.
    ``drain_polls``: describe calls a terminating instance survives.
    ``lb_deletion_polls``: describe calls a deleted load balancer stays visible.
    ``auto_provision``: unknown security groups and target groups referenced by
    name are treated as pre-existing.
    """

    def __init__(self, failure_injector=None, warmup_polls=0, drain_polls=0, lb_deletion_polls=0,
                 auto_provision=True):
        self.failure_injector = failure_injector if failure_injector else FailureInjector()
        self.warmup_polls = warmup_polls
        self.drain_polls = drain_polls
        self.lb_deletion_polls = lb_deletion_polls
        self.auto_provision = auto_provision
        self.clients = {}
        self._ids = itertools.count(1)
        self._clock = itertools.count(1)

    def next_id(self):
        return next(self._ids)

    def now(self):
        return float(next(self._clock))

    def client(self, region):
        if region not in self.clients:
            self.clients[region] = SimulatedClient(self, region)
        return self.clients[region]

    __call__ = client


class SimulatedClient(CloudClient):
    def __init__(self, cloud, region):
        self.cloud = cloud
        self.region = region
        self.logger = get_logger(f"simulator.{region}")

        self.autoscaling_groups = {}
        self.launch_templates = {}  # template id -> list of versions
        self.target_groups = {}  # arn -> TargetGroup
        self.security_groups = {}  # id -> SecurityGroup
        self.load_balancers = {}  # arn -> LoadBalancer
        self.scaling_policies = {}  # group -> policy names
        self.alarms = {}  # group -> alarm names
        self.scheduled_actions = {}  # group -> action names
        self.metrics_enabled = set()
        self.commands = []  # (instance ids, commands)
        self.request_count = 0.0

        self.calls = []
        self.deleted_groups = []
        self.deleted_target_groups = []
        self.deleted_load_balancers = []
        self.deleted_security_groups = []

        self._health_polls = {}
        self._terminating = {}  # instance id -> polls left
        self._deleting_lbs = {}  # arn -> polls left

    async def _call(self, operation, *args):
        self.calls.append((operation, args))
        delay = self.cloud.failure_injector.delay_seconds()
        if delay > 0:
            await asyncio.sleep(delay)
        if self.cloud.failure_injector.should_fail(operation):
            raise ProviderError(f"simulated failure of {operation} in {self.region}", code="Throttling")

    def calls_to(self, operation):
        return [args for op, args in self.calls if op == operation]

    # seeding helpers

    def add_autoscaling_group(self, name, capacity, tags=None, target_group_arns=(), created_time=None,
                              security_groups=()):
        template = self._new_launch_template(f"{name}-0", "ami-seeded", "t3.micro", list(security_groups))
        group = AutoscalingGroup(
            name=name,
            capacity=capacity,
            launch_template=template,
            target_group_arns=list(target_group_arns),
            tags=dict(tags or {}),
            created_time=created_time if created_time is not None else self.cloud.now(),
        )
        self.autoscaling_groups[name] = group
        self._scale(group, capacity.desired)
        return group

    def add_target_group(self, name, port=80, vpc_id="vpc-sim"):
        arn = f"arn:aws:elasticloadbalancing:{self.region}:{ACCOUNT_ID}:targetgroup/{name}/{self.cloud.next_id():016x}"
        group = TargetGroup(name=name, arn=arn, port=port, vpc_id=vpc_id)
        self.target_groups[arn] = group
        return group

    def add_security_group(self, name, vpc_id="vpc-sim"):
        group_id = f"sg-{self.cloud.next_id():08x}"
        self.security_groups[group_id] = SecurityGroup(group_id=group_id, name=name, vpc_id=vpc_id)
        return group_id

    def add_load_balancer(self, name, security_groups=()):
        arn = f"arn:aws:elasticloadbalancing:{self.region}:{ACCOUNT_ID}:loadbalancer/app/{name}/{self.cloud.next_id():016x}"
        lb = LoadBalancer(name=name, arn=arn, security_groups=list(security_groups))
        self.load_balancers[arn] = lb
        return lb

    # internal state changes

    def _new_launch_template(self, name, image_id, instance_type, security_groups):
        template = LaunchTemplate(
            template_id=f"lt-{self.cloud.next_id():08x}",
            name=name,
            image_id=image_id,
            instance_type=instance_type,
            security_groups=list(security_groups),
        )
        self.launch_templates[template.template_id] = [template]
        return template

    def _scale(self, group, desired):
        running = [i for i in group.instances if i.lifecycle_state != "Terminating"]
        if len(running) < desired:
            groups = list(group.launch_template.security_groups) if group.launch_template else []
            for _ in range(desired - len(running)):
                n = self.cloud.next_id()
                group.instances.append(Instance(
                    instance_id=f"i-{n:08x}",
                    network_interfaces=[NetworkInterface(f"eni-{n:08x}", list(groups))],
                ))
        elif len(running) > desired:
            for instance in running[desired:]:
                if self.cloud.drain_polls > 0:
                    instance.lifecycle_state = "Terminating"
                    self._terminating[instance.instance_id] = self.cloud.drain_polls
                else:
                    group.instances.remove(instance)

    def _tick(self, group):
        for instance in list(group.instances):
            left = self._terminating.get(instance.instance_id)
            if left is None:
                continue
            if left <= 1:
                del self._terminating[instance.instance_id]
                group.instances.remove(instance)
            else:
                self._terminating[instance.instance_id] = left - 1

    def _group(self, name):
        group = self.autoscaling_groups.get(name)
        if group is None:
            raise ResourceNotFoundError(f"autoscaling group does not exist: {name}")
        return group

    def _instances(self):
        for group in self.autoscaling_groups.values():
            yield from group.instances

    def _find_target_group(self, name_or_arn):
        if name_or_arn in self.target_groups:
            return self.target_groups[name_or_arn]
        for group in self.target_groups.values():
            if group.name == name_or_arn:
                return group
        if self.cloud.auto_provision and not name_or_arn.startswith("arn:"):
            return self.add_target_group(name_or_arn)
        return None

    def _security_group_by_name(self, name):
        for group in self.security_groups.values():
            if group.name == name:
                return group
        return None

    def _healthy_after_warmup(self, instance_id):
        polls = self._health_polls.get(instance_id, 0) + 1
        self._health_polls[instance_id] = polls
        return polls > self.cloud.warmup_polls

    # autoscaling groups

    async def list_autoscaling_groups(self, prefix):
        await self._call("list_autoscaling_groups", prefix)
        ret = []
        for name, group in sorted(self.autoscaling_groups.items()):
            if name.startswith(prefix):
                self._tick(group)
                ret.append(copy.deepcopy(group))
        return ret

    async def describe_autoscaling_group(self, name):
        await self._call("describe_autoscaling_group", name)
        group = self.autoscaling_groups.get(name)
        if group is None:
            return None
        self._tick(group)
        return copy.deepcopy(group)

    async def create_autoscaling_group(self, name, launch_template, capacity, target_group_arns=(),
                                       load_balancers=(), availability_zones=(), subnets=(),
                                       termination_policies=(), tags=None):
        await self._call("create_autoscaling_group", name)
        if name in self.autoscaling_groups:
            raise AlreadyExistsError(f"autoscaling group already exists: {name}", code="AlreadyExists")
        template = None
        for versions in self.launch_templates.values():
            if versions[-1].name == launch_template:
                template = versions[-1]
        if template is None:
            raise ResourceNotFoundError(f"launch template does not exist: {launch_template}")

        group = AutoscalingGroup(
            name=name,
            capacity=capacity,
            launch_template=template,
            target_group_arns=list(target_group_arns),
            load_balancers=list(load_balancers),
            tags=dict(tags or {}),
            created_time=self.cloud.now(),
        )
        self.autoscaling_groups[name] = group
        self._scale(group, capacity.desired)
        self.logger.debug(f"created autoscaling group {name} with {capacity}")

    async def update_autoscaling_group_size(self, name, capacity):
        await self._call("update_autoscaling_group_size", name, capacity)
        group = self._group(name)
        group.capacity = capacity
        self._scale(group, capacity.desired)

    async def delete_autoscaling_group(self, name):
        await self._call("delete_autoscaling_group", name)
        self._group(name)
        del self.autoscaling_groups[name]
        self.deleted_groups.append(name)

    async def attach_target_groups(self, name, target_group_arns):
        await self._call("attach_target_groups", name, tuple(target_group_arns))
        group = self._group(name)
        for arn in target_group_arns:
            if arn not in group.target_group_arns:
                group.target_group_arns.append(arn)

    async def detach_target_groups(self, name, target_group_arns):
        await self._call("detach_target_groups", name, tuple(target_group_arns))
        group = self._group(name)
        group.target_group_arns = [a for a in group.target_group_arns if a not in target_group_arns]

    async def delete_tag(self, name, key):
        await self._call("delete_tag", name, key)
        self._group(name).tags.pop(key, None)

    async def update_autoscaling_launch_template(self, name, launch_template):
        await self._call("update_autoscaling_launch_template", name, launch_template.template_id)
        self._group(name).launch_template = launch_template

    async def enable_metrics_collection(self, name):
        await self._call("enable_metrics_collection", name)
        self.metrics_enabled.add(name)

    async def create_scaling_policy(self, name, policy):
        await self._call("create_scaling_policy", name, policy.name)
        self._group(name)
        self.scaling_policies.setdefault(name, []).append(policy.name)
        return f"arn:aws:autoscaling:{self.region}:{ACCOUNT_ID}:scalingPolicy:{name}/{policy.name}"

    async def create_scaling_alarms(self, name, alarms, policy_arns):
        await self._call("create_scaling_alarms", name)
        for alarm in alarms:
            missing = [a for a in alarm.alarm_actions if a not in policy_arns]
            if missing:
                raise ProviderError(f"alarm {alarm.name} refers to unknown scaling policies: {missing}",
                                    code="ValidationError", retryable=False)
            self.alarms.setdefault(name, []).append(alarm.name)

    async def create_scheduled_actions(self, name, actions):
        await self._call("create_scheduled_actions", name)
        self._group(name)
        self.scheduled_actions.setdefault(name, []).extend(a.name for a in actions)

    # launch templates

    async def create_launch_template(self, name, image_id, instance_type, ssh_key="", iam_instance_profile="",
                                     ebs_optimized=False, security_groups=(), detailed_monitoring=False):
        await self._call("create_launch_template", name)
        for versions in self.launch_templates.values():
            if versions[-1].name == name:
                raise AlreadyExistsError(f"launch template already exists: {name}")
        return self._new_launch_template(name, image_id, instance_type, security_groups)

    async def describe_launch_template(self, template_id):
        await self._call("describe_launch_template", template_id)
        versions = self.launch_templates.get(template_id)
        if not versions:
            raise ResourceNotFoundError(f"launch template does not exist: {template_id}")
        return copy.deepcopy(versions[-1])

    async def create_launch_template_version(self, template, security_groups):
        await self._call("create_launch_template_version", template.template_id)
        versions = self.launch_templates.get(template.template_id)
        if not versions:
            raise ResourceNotFoundError(f"launch template does not exist: {template.template_id}")
        latest = versions[-1]
        new = LaunchTemplate(
            template_id=latest.template_id,
            name=latest.name,
            version=latest.version + 1,
            image_id=latest.image_id,
            instance_type=latest.instance_type,
            security_groups=list(security_groups),
        )
        versions.append(new)
        return copy.deepcopy(new)

    async def delete_launch_templates(self, prefix):
        await self._call("delete_launch_templates", prefix)
        for template_id, versions in list(self.launch_templates.items()):
            if versions[-1].name.startswith(prefix):
                del self.launch_templates[template_id]

    # compute and network

    async def get_security_group_ids(self, vpc, names):
        await self._call("get_security_group_ids", vpc, tuple(names))
        ret = []
        for name in names:
            if name in self.security_groups:
                ret.append(name)
                continue
            group = self._security_group_by_name(name)
            if group is None:
                if not self.cloud.auto_provision:
                    raise ResourceNotFoundError(f"security group does not exist: {name}")
                ret.append(self.add_security_group(name, vpc))
            else:
                ret.append(group.group_id)
        return ret

    async def get_availability_zones(self, vpc, zones=()):
        await self._call("get_availability_zones", vpc)
        return list(zones) or [f"{self.region}a", f"{self.region}c"]

    async def get_subnets(self, vpc, use_public_subnets, availability_zones):
        await self._call("get_subnets", vpc)
        kind = "public" if use_public_subnets else "private"
        return [f"subnet-{kind}-{zone}" for zone in availability_zones]

    async def describe_instances(self, instance_ids):
        await self._call("describe_instances", tuple(instance_ids))
        return [copy.deepcopy(i) for i in self._instances() if i.instance_id in instance_ids]

    async def modify_network_interface(self, interface_id, security_groups):
        await self._call("modify_network_interface", interface_id, tuple(security_groups))
        for instance in self._instances():
            for interface in instance.network_interfaces:
                if interface.interface_id == interface_id:
                    interface.security_groups = list(security_groups)
                    return
        raise ResourceNotFoundError(f"network interface does not exist: {interface_id}")

    async def send_command(self, instance_ids, commands):
        await self._call("send_command", tuple(instance_ids))
        self.commands.append((list(instance_ids), list(commands)))
        return True

    # security groups

    async def create_security_group(self, name, vpc_id):
        await self._call("create_security_group", name)
        if self._security_group_by_name(name) is not None:
            raise AlreadyExistsError(f"security group already exists: {name}", code="InvalidGroup.Duplicate")
        return self.add_security_group(name, vpc_id)

    async def get_security_group(self, name):
        await self._call("get_security_group", name)
        group = self._security_group_by_name(name)
        if group is None:
            raise ResourceNotFoundError(f"security group does not exist: {name}", code="InvalidGroup.NotFound")
        return group.group_id

    async def describe_security_groups(self, group_ids):
        await self._call("describe_security_groups", tuple(group_ids))
        return [copy.deepcopy(self.security_groups[g]) for g in group_ids if g in self.security_groups]

    async def authorize_ingress(self, group_id, rule):
        await self._call("authorize_ingress", group_id)
        group = self.security_groups.get(group_id)
        if group is None:
            raise ResourceNotFoundError(f"security group does not exist: {group_id}")
        if rule in group.ingress:
            raise AlreadyExistsError(f"rule already exists in {group_id}", code="InvalidPermission.Duplicate")
        group.ingress.append(rule)

    async def authorize_egress(self, group_id, rule):
        await self._call("authorize_egress", group_id)
        group = self.security_groups.get(group_id)
        if group is None:
            raise ResourceNotFoundError(f"security group does not exist: {group_id}")
        if rule in group.egress:
            raise AlreadyExistsError(f"rule already exists in {group_id}", code="InvalidPermission.Duplicate")
        group.egress.append(rule)

    async def revoke_ingress(self, group_id, rule):
        await self._call("revoke_ingress", group_id)
        group = self.security_groups.get(group_id)
        if group is None or rule not in group.ingress:
            raise ResourceNotFoundError(f"rule does not exist in {group_id}", code="InvalidPermission.NotFound")
        group.ingress.remove(rule)

    async def delete_security_group(self, group_id):
        await self._call("delete_security_group", group_id)
        if group_id not in self.security_groups:
            raise ResourceNotFoundError(f"security group does not exist: {group_id}")
        for lb in self.load_balancers.values():
            if group_id in lb.security_groups:
                raise ProviderError(f"security group {group_id} is still used by {lb.name}",
                                    code="DependencyViolation")
        for group in self.security_groups.values():
            if any(rule.source_group == group_id for rule in group.ingress):
                raise ProviderError(f"security group {group_id} is referenced by {group.group_id}",
                                    code="DependencyViolation")
        del self.security_groups[group_id]
        self.deleted_security_groups.append(group_id)

    # load balancing

    async def get_target_group_arns(self, names):
        await self._call("get_target_group_arns", tuple(names))
        ret = []
        for name in names:
            group = self._find_target_group(name)
            if group is None:
                raise ResourceNotFoundError(f"target group does not exist: {name}", code="TargetGroupNotFound")
            ret.append(group.arn)
        return ret

    async def describe_target_group(self, name_or_arn):
        await self._call("describe_target_group", name_or_arn)
        group = self._find_target_group(name_or_arn)
        return copy.deepcopy(group) if group else None

    async def create_target_group(self, source, name):
        await self._call("create_target_group", name)
        for group in self.target_groups.values():
            if group.name == name:
                raise AlreadyExistsError(f"target group already exists: {name}", code="DuplicateTargetGroupName")
        group = self.add_target_group(name, port=source.port, vpc_id=source.vpc_id)
        group.protocol = source.protocol
        group.health_check_path = source.health_check_path
        return copy.deepcopy(group)

    async def delete_target_group(self, arn):
        await self._call("delete_target_group", arn)
        if arn not in self.target_groups:
            raise ResourceNotFoundError(f"target group does not exist: {arn}")
        del self.target_groups[arn]
        self.deleted_target_groups.append(arn)

    async def describe_target_health(self, group, target_group_arn):
        await self._call("describe_target_health", group.name, target_group_arn)
        live = self._group(group.name)
        attached = target_group_arn in live.target_group_arns
        hosts = []
        for instance in live.instances:
            if not attached:
                state = "unused"
            elif self._healthy_after_warmup(instance.instance_id):
                state = "healthy"
            else:
                state = "initial"
            hosts.append(HealthcheckHost(
                instance_id=instance.instance_id,
                lifecycle_state=instance.lifecycle_state,
                target_status=state,
                health_status=instance.health_status,
                valid=instance.lifecycle_state == "InService" and state == "healthy"
                and instance.health_status == "Healthy",
            ))
        return hosts

    async def describe_load_balancer_health(self, group, load_balancer):
        await self._call("describe_load_balancer_health", group.name, load_balancer)
        live = self._group(group.name)
        hosts = []
        for instance in live.instances:
            state = "InService" if self._healthy_after_warmup(instance.instance_id) else "OutOfService"
            hosts.append(HealthcheckHost(
                instance_id=instance.instance_id,
                lifecycle_state=instance.lifecycle_state,
                target_status=state,
                health_status=instance.health_status,
                valid=instance.lifecycle_state == "InService" and state == "InService",
            ))
        return hosts

    async def get_load_balancers_for_target_groups(self, target_group_arns):
        await self._call("get_load_balancers_for_target_groups", tuple(target_group_arns))
        return [lb.arn for lb in self.load_balancers.values() if lb.listener_target_group in target_group_arns]

    async def describe_load_balancers(self):
        await self._call("describe_load_balancers")
        return [copy.deepcopy(lb) for arn, lb in self.load_balancers.items() if arn not in self._deleting_lbs]

    async def describe_load_balancer(self, arn):
        await self._call("describe_load_balancer", arn)
        if arn in self._deleting_lbs:
            left = self._deleting_lbs[arn]
            if left <= 1:
                del self._deleting_lbs[arn]
                del self.load_balancers[arn]
                return None
            self._deleting_lbs[arn] = left - 1
        lb = self.load_balancers.get(arn)
        return copy.deepcopy(lb) if lb else None

    async def create_load_balancer(self, name, subnets, security_group):
        await self._call("create_load_balancer", name)
        for lb in self.load_balancers.values():
            if lb.name == name:
                raise AlreadyExistsError(f"load balancer already exists: {name}", code="DuplicateLoadBalancerName")
        return copy.deepcopy(self.add_load_balancer(name, [security_group] if security_group else []))

    async def delete_load_balancer(self, arn):
        await self._call("delete_load_balancer", arn)
        if arn not in self.load_balancers:
            raise ResourceNotFoundError(f"load balancer does not exist: {arn}")
        self.deleted_load_balancers.append(arn)
        if self.cloud.lb_deletion_polls > 0:
            self._deleting_lbs[arn] = self.cloud.lb_deletion_polls
            # security groups are released as soon as deletion starts
            self.load_balancers[arn].security_groups = []
        else:
            del self.load_balancers[arn]

    async def set_listener_target_group(self, load_balancer_arn, target_group_arn):
        await self._call("set_listener_target_group", load_balancer_arn, target_group_arn)
        lb = self.load_balancers.get(load_balancer_arn)
        if lb is None:
            raise ResourceNotFoundError(f"load balancer does not exist: {load_balancer_arn}")
        lb.listener_target_group = target_group_arn

    # metrics

    async def get_request_count(self, resource_arns, start, end):
        await self._call("get_request_count", tuple(resource_arns))
        return self.request_count
