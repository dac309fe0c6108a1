"""Contract the deployer expects from a cloud provider binding.

One client serves one region. Every call is a coroutine; failures are
reported as ``ProviderError`` (or one of its subclasses) so callers can tell
transient errors from permanent ones.
"""


class CloudClient:
    region = ""

    # autoscaling groups

    async def list_autoscaling_groups(self, prefix):
        """All groups whose name starts with ``prefix``"""
        raise NotImplementedError

    async def describe_autoscaling_group(self, name):
        """The named group, or None if it does not exist"""
        raise NotImplementedError

    async def create_autoscaling_group(self, name, launch_template, capacity, target_group_arns=(),
                                       load_balancers=(), availability_zones=(), subnets=(),
                                       termination_policies=(), tags=None):
        raise NotImplementedError

    async def update_autoscaling_group_size(self, name, capacity):
        raise NotImplementedError

    async def delete_autoscaling_group(self, name):
        raise NotImplementedError

    async def attach_target_groups(self, name, target_group_arns):
        raise NotImplementedError

    async def detach_target_groups(self, name, target_group_arns):
        raise NotImplementedError

    async def delete_tag(self, name, key):
        raise NotImplementedError

    async def update_autoscaling_launch_template(self, name, launch_template):
        raise NotImplementedError

    async def enable_metrics_collection(self, name):
        raise NotImplementedError

    async def create_scaling_policy(self, name, policy):
        """Attach ``policy`` to the group and return the policy ARN"""
        raise NotImplementedError

    async def create_scaling_alarms(self, name, alarms, policy_arns):
        raise NotImplementedError

    async def create_scheduled_actions(self, name, actions):
        raise NotImplementedError

    # launch templates

    async def create_launch_template(self, name, image_id, instance_type, ssh_key="", iam_instance_profile="",
                                     ebs_optimized=False, security_groups=(), detailed_monitoring=False):
        raise NotImplementedError

    async def describe_launch_template(self, template_id):
        raise NotImplementedError

    async def create_launch_template_version(self, template, security_groups):
        raise NotImplementedError

    async def delete_launch_templates(self, prefix):
        """Delete every launch template whose name starts with ``prefix``"""
        raise NotImplementedError

    # compute and network

    async def get_security_group_ids(self, vpc, names):
        raise NotImplementedError

    async def get_availability_zones(self, vpc, zones=()):
        raise NotImplementedError

    async def get_subnets(self, vpc, use_public_subnets, availability_zones):
        raise NotImplementedError

    async def describe_instances(self, instance_ids):
        raise NotImplementedError

    async def modify_network_interface(self, interface_id, security_groups):
        raise NotImplementedError

    async def send_command(self, instance_ids, commands):
        """Run shell ``commands`` on the instances, True when accepted"""
        raise NotImplementedError

    # security groups

    async def create_security_group(self, name, vpc_id):
        """Return the new group id; raises AlreadyExistsError for a duplicate name"""
        raise NotImplementedError

    async def get_security_group(self, name):
        """Group id by name; raises ResourceNotFoundError when missing"""
        raise NotImplementedError

    async def describe_security_groups(self, group_ids):
        raise NotImplementedError

    async def authorize_ingress(self, group_id, rule):
        raise NotImplementedError

    async def authorize_egress(self, group_id, rule):
        raise NotImplementedError

    async def revoke_ingress(self, group_id, rule):
        raise NotImplementedError

    async def delete_security_group(self, group_id):
        raise NotImplementedError

    # load balancing

    async def get_target_group_arns(self, names):
        raise NotImplementedError

    async def describe_target_group(self, name_or_arn):
        """The target group, or None if it does not exist"""
        raise NotImplementedError

    async def create_target_group(self, source, name):
        """Copy ``source`` settings into a new target group called ``name``"""
        raise NotImplementedError

    async def delete_target_group(self, arn):
        raise NotImplementedError

    async def describe_target_health(self, group, target_group_arn):
        """HealthcheckHost per instance of ``group`` as seen by the target group"""
        raise NotImplementedError

    async def describe_load_balancer_health(self, group, load_balancer):
        raise NotImplementedError

    async def get_load_balancers_for_target_groups(self, target_group_arns):
        raise NotImplementedError

    async def describe_load_balancers(self):
        raise NotImplementedError

    async def describe_load_balancer(self, arn):
        """The load balancer, or None once it is gone"""
        raise NotImplementedError

    async def create_load_balancer(self, name, subnets, security_group):
        raise NotImplementedError

    async def delete_load_balancer(self, arn):
        raise NotImplementedError

    async def set_listener_target_group(self, load_balancer_arn, target_group_arn):
        """Forward the load balancer listener to the target group, creating the listener if needed"""
        raise NotImplementedError

    # metrics

    async def get_request_count(self, resource_arns, start, end):
        raise NotImplementedError
